"""
部署流水线编排。

阶段严格按 1 -> 8 顺序执行，阶段之间只通过文件路径与显式传入的 Config 交换信息：
  1 预检  2 依赖  3 PKI  4 配置渲染  5 主机状态  6 服务  7 客户端文件  8 报告
预检/依赖/PKI/渲染/服务/导出失败为致命错误，立即中止；
主机状态子操作与地址探测失败只记录告警并继续，最后统一汇总。
"""

from __future__ import annotations

import subprocess
from contextlib import contextmanager
from typing import Iterator

from loguru import logger

from ..bundle import core as bundle_core
from ..bundle.core import ClientBundle
from ..config import Config
from ..errors import ProvisioningError
from ..host import core as host_core
from ..packages import core as packages_core
from ..pki import services as pki_services
from ..pki.schemas import ServerCredentials
from ..preflight import core as preflight_core
from ..render import core as render_core
from ..render.schemas import ServerParams
from ..report import core as report_core
from ..service.core import ServiceController
from .schemas import PipelineResult


@contextmanager
def _stage(number: int, stage: str, title: str) -> Iterator[None]:
    """记录阶段边界；未归类的底层异常统一转换为带阶段名的 ProvisioningError。"""
    logger.info(f"Step {number}: {title}")
    try:
        yield
    except ProvisioningError:
        raise
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        raise ProvisioningError(f"{title}失败: {e}", stage=stage) from e


def build_server_params(cfg: Config, creds: ServerCredentials) -> ServerParams:
    return ServerParams(
        port=cfg.port,
        proto=cfg.proto,
        dev=cfg.dev,
        cipher=cfg.cipher,
        auth=cfg.auth,
        network=cfg.network,
        keepalive_interval=cfg.keepalive_interval,
        keepalive_timeout=cfg.keepalive_timeout,
        ca=creds.ca_cert,
        cert=creds.cert,
        key=creds.key,
        dh=creds.dh,
        server_dir=cfg.server_dir,
    )


def provision(cfg: Config) -> PipelineResult:
    """执行完整部署流程并返回各阶段产物。"""
    warnings: list[str] = []

    with _stage(1, "preflight", "预检"):
        host = preflight_core.run_preflight(cfg.os_release_path, cfg.supported_os)

    with _stage(2, "dependencies", "安装依赖"):
        installed = packages_core.ensure_packages(cfg.packages, host.os_id)
        version = packages_core.detect_openvpn_version()

    with _stage(3, "pki", "PKI 与证书"):
        pki = pki_services.ensure_pki(cfg)

    with _stage(4, "render", "生成服务端配置"):
        rendered = render_core.write_server_config(
            cfg.server_config_path, build_server_params(cfg, pki.installed), version
        )

    with _stage(5, "host", "配置转发、防火墙与 systemd"):
        host_state = host_core.apply_host_state(cfg)
    for r in host_state.results:
        if not r.ok:
            warnings.append(f"{r.name}: {r.detail} (排查: {r.hint})")

    with _stage(6, "service", "启动 OpenVPN 服务"):
        controller = ServiceController(
            cfg.unit_name,
            timeout_s=cfg.service_timeout,
            poll_interval=cfg.service_poll_interval,
        )
        service = controller.start()
    if not service.enabled:
        warnings.append(f"{cfg.unit_name} 未设置开机自启 (排查: systemctl is-enabled {cfg.unit_name})")

    with _stage(7, "bundle", "导出 MikroTik 客户端文件"):
        # CA 重建后旧的客户端文件已失效，直接覆盖
        bundle = bundle_core.export_bundle(
            cfg.pki_dir, pki.client, cfg.bundle_dir, overwrite="ca" in pki.created
        )

    with _stage(8, "report", "生成连接说明"):
        address = report_core.resolve_external_address(cfg.ip_lookup_urls, cfg.ip_lookup_timeout)
        params = render_core.params_from_config(rendered.path.read_text(encoding="utf-8"))
        report = report_core.write_report(
            cfg.report_path,
            address,
            params,
            bundle.directory,
            bundle.client,
            cfg.unit_name,
            warnings,
        )

    if report.warnings:
        logger.warning(f"部署完成，但有 {len(report.warnings)} 项降级:")
        for w in report.warnings:
            logger.warning(f"  - {w}")
    else:
        logger.info("部署完成")

    return PipelineResult(
        host=host,
        installed_packages=installed,
        openvpn_version=version,
        pki=pki,
        server_config=rendered.path,
        host_state=host_state,
        service=service,
        bundle=bundle,
        report=report,
        warnings=report.warnings,
    )


def add_client(cfg: Config, name: str, overwrite: bool = False) -> ClientBundle:
    """为新的 MikroTik 客户端签发证书并导出文件，不改动服务端。"""
    with _stage(1, "preflight", "预检"):
        preflight_core.check_privilege()
    with _stage(2, "pki", f"签发客户端证书 {name}"):
        issued = pki_services.issue_client(cfg, name)
    with _stage(3, "bundle", "导出客户端文件"):
        return bundle_core.export_bundle(cfg.pki_dir, issued, cfg.export_root / name, overwrite=overwrite)
