"""
PKI 管理的业务编排层。
此模块把核心逻辑组合成可重复运行的步骤，供流水线调用。
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from .. import system
from ..config import Config
from ..errors import PKIError
from . import core, dh
from .schemas import CertRole, IssuedCertificate, PKIArtifacts, ServerCredentials


def _ensure_certificate(cfg: Config, subject: str, role: CertRole, created: list[str]) -> IssuedCertificate:
    """已签发则复用，否则签发新证书。"""
    if core.is_issued(cfg.pki_dir, subject):
        if not core.verify_issued_by_ca(cfg.pki_dir, core.subject_paths(cfg.pki_dir, subject)["cert"]):
            raise PKIError(f"已有证书并非由当前 CA 签发: {subject}")
        logger.info(f"{role.value} 证书已存在，跳过签发: {subject}")
        return core.load_issued(cfg.pki_dir, subject, role)
    issued = core.issue_certificate(
        cfg.pki_dir, subject, role, days=cfg.cert_days, key_size=cfg.key_size
    )
    created.append(f"{role.value}:{subject}")
    return issued


def install_server_credentials(cfg: Config, server: IssuedCertificate, dh_path: Path) -> ServerCredentials:
    """
    将 ca.crt、server.crt、server.key、dh.pem 复制到 OpenVPN 服务目录。
    私钥 0600，其余 0644；内容未变化时不重写。
    """
    target = ServerCredentials(
        ca_cert=cfg.server_dir / "ca.crt",
        cert=cfg.server_dir / f"{server.subject}.crt",
        key=cfg.server_dir / f"{server.subject}.key",
        dh=cfg.server_dir / "dh.pem",
    )
    pairs = [
        (server.ca_cert_path, target.ca_cert, 0o644),
        (server.cert_path, target.cert, 0o644),
        (server.key_path, target.key, 0o600),
        (dh_path, target.dh, 0o644),
    ]
    for src, dst, mode in pairs:
        data = src.read_bytes()
        if not (dst.exists() and dst.read_bytes() == data):
            system.atomic_write(dst, data, mode)
    logger.info(f"服务端证书已安装到 {cfg.server_dir}")
    return target


def ensure_pki(cfg: Config) -> PKIArtifacts:
    """
    幂等地完成 PKI 全部步骤：
    初始化目录 -> CA -> 服务端证书 -> 客户端证书 -> DH 参数 -> 安装服务端凭据。
    """
    if cfg.server_name == cfg.client_name:
        raise PKIError(f"服务端与客户端证书名称不能相同: {cfg.server_name}")
    created: list[str] = []
    if core.init_pki(cfg.pki_dir):
        created.append("pki")

    if cfg.force_ca:
        # 旧证书链不到新 CA，先整体归档，随后重新签发服务端与客户端证书
        core.archive_ca_material(cfg.pki_dir)
    if cfg.force_ca or not core.ca_exists(cfg.pki_dir):
        core.issue_ca(
            cfg.pki_dir,
            cfg.ca_common_name,
            days=cfg.ca_days,
            key_size=cfg.key_size,
            force=cfg.force_ca,
        )
        created.append("ca")
    else:
        logger.info("CA 已存在，跳过创建")
    paths = core.pki_paths(cfg.pki_dir)
    core.ensure_private_key_mode(paths["ca_key"])

    server = _ensure_certificate(cfg, cfg.server_name, CertRole.SERVER, created)
    client = _ensure_certificate(cfg, cfg.client_name, CertRole.CLIENT, created)

    dh_path = dh.generate_dh_params(paths["dh"], cfg.dh_key_size)
    installed = install_server_credentials(cfg, server, dh_path)

    return PKIArtifacts(
        pki_dir=cfg.pki_dir,
        ca_cert=paths["ca_cert"],
        server=server,
        client=client,
        dh=dh_path,
        installed=installed,
        created=created,
    )


def issue_client(cfg: Config, name: str) -> IssuedCertificate:
    """为额外的客户端签发证书（服务端无需重新部署）。"""
    core.load_ca(cfg.pki_dir)
    return core.issue_certificate(
        cfg.pki_dir, name, CertRole.CLIENT, days=cfg.cert_days, key_size=cfg.key_size
    )
