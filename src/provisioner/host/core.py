"""
主机状态变更：IP 转发、firewalld 端口与 NAT、systemd override。

三个子操作互相独立且各自幂等：先查询现状，缺失时才添加，
重复运行不会产生重复规则或重复配置行。
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable

from loguru import logger

from .. import system
from ..config import Config
from ..errors import HostMutationFailure
from .schemas import HostMutationReport, SubOperationResult

OPENVPN_BIN = "/usr/sbin/openvpn"
STATUS_LOG = "/run/openvpn-server/status-server.log"

IP_FORWARD = "ip_forward"
FIREWALL = "firewall"
SERVICE_OVERRIDE = "service_override"


def _run(cmd: list[str], operation: str) -> subprocess.CompletedProcess:
    try:
        return system.run_command(cmd, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise HostMutationFailure(f"执行 {' '.join(cmd)} 失败: {e}", operation=operation)


def _run_ok(cmd: list[str], operation: str) -> subprocess.CompletedProcess:
    result = _run(cmd, operation)
    if result.returncode != 0:
        raise HostMutationFailure(
            f"{' '.join(cmd)} 返回 {result.returncode}: {result.stderr.strip()}",
            operation=operation,
        )
    return result


def enable_ip_forwarding(dropin: Path) -> bool:
    """
    运行时开启并持久化 net.ipv4.ip_forward。
    持久化使用独立的 sysctl.d 片段，不向 /etc/sysctl.conf 追加重复行。
    :return: 是否发生变更。
    """
    changed = False
    current = _run(["sysctl", "-n", "net.ipv4.ip_forward"], IP_FORWARD)
    if current.returncode != 0 or current.stdout.strip() != "1":
        _run_ok(["sysctl", "-w", "net.ipv4.ip_forward=1"], IP_FORWARD)
        changed = True
    try:
        if system.write_if_changed(dropin, "net.ipv4.ip_forward = 1\n", 0o644):
            changed = True
    except OSError as e:
        raise HostMutationFailure(f"写入 {dropin} 失败: {e}", operation=IP_FORWARD)
    return changed


def _firewall_query(flag: str) -> bool:
    # firewall-cmd --query-*：0 表示存在，1 表示不存在，其余为错误
    result = _run(["firewall-cmd", "--permanent", flag], FIREWALL)
    if result.returncode == 0:
        return True
    if result.returncode == 1:
        return False
    raise HostMutationFailure(
        f"firewall-cmd {flag} 返回 {result.returncode}: {result.stderr.strip()}",
        operation=FIREWALL,
    )


def configure_firewall(port: int, proto: str) -> bool:
    """
    开放服务端口并启用 masquerade，先查询再添加。
    :return: 是否发生变更。
    """
    _run_ok(["systemctl", "enable", "--now", "firewalld"], FIREWALL)
    changed = False
    rule = f"{port}/{proto}"
    if not _firewall_query(f"--query-port={rule}"):
        _run_ok(["firewall-cmd", "--permanent", f"--add-port={rule}"], FIREWALL)
        changed = True
    else:
        logger.info(f"防火墙已开放 {rule}，跳过")
    if not _firewall_query("--query-masquerade"):
        _run_ok(["firewall-cmd", "--permanent", "--add-masquerade"], FIREWALL)
        changed = True
    else:
        logger.info("masquerade 已启用，跳过")
    _run_ok(["firewall-cmd", "--reload"], FIREWALL)
    return changed


def override_path(systemd_dir: Path, unit_name: str) -> Path:
    return systemd_dir / f"{unit_name}.service.d" / "override.conf"


def render_override(server_dir: Path, config_name: str) -> str:
    exec_start = (
        f"{OPENVPN_BIN} --status {STATUS_LOG} --status-version 2 "
        f"--suppress-timestamps --cd {server_dir} --config {config_name}"
    )
    return "\n".join([
        "[Service]",
        "# Replace the packaged ExecStart (its cipher flags conflict with RouterOS)",
        "ExecStart=",
        f"ExecStart={exec_start}",
        "",
    ])


def install_service_override(systemd_dir: Path, unit_name: str, server_dir: Path, config_name: str) -> bool:
    """写入 systemd override 片段，内容变化时执行 daemon-reload。"""
    path = override_path(systemd_dir, unit_name)
    try:
        changed = system.write_if_changed(path, render_override(server_dir, config_name), 0o644)
    except OSError as e:
        raise HostMutationFailure(f"写入 {path} 失败: {e}", operation=SERVICE_OVERRIDE)
    if changed:
        _run_ok(["systemctl", "daemon-reload"], SERVICE_OVERRIDE)
    return changed


def _attempt(name: str, fn: Callable[[], bool]) -> SubOperationResult:
    try:
        changed = fn()
    except HostMutationFailure as e:
        logger.warning(f"主机变更子操作 {name} 失败: {e}")
        return SubOperationResult(name=name, ok=False, detail=str(e), hint=e.hint)
    logger.info(f"主机变更子操作 {name} 完成 ({'已变更' if changed else '无变化'})")
    return SubOperationResult(name=name, ok=True, changed=changed)


def apply_host_state(cfg: Config) -> HostMutationReport:
    """依次执行三个子操作；单项失败记录后继续执行其余项。"""
    report = HostMutationReport()
    report.results.append(_attempt(IP_FORWARD, lambda: enable_ip_forwarding(cfg.sysctl_dropin)))
    report.results.append(_attempt(FIREWALL, lambda: configure_firewall(cfg.port, cfg.proto)))
    report.results.append(
        _attempt(
            SERVICE_OVERRIDE,
            lambda: install_service_override(
                cfg.systemd_dir, cfg.unit_name, cfg.server_dir, cfg.server_config_path.name
            ),
        )
    )
    return report
