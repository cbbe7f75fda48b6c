"""
PKI 管理的核心逻辑实现。
包括初始化 PKI 目录、创建自签 CA、为服务端/客户端签发证书、校验证书归属等。

目录布局与 easy-rsa 保持一致（ca.crt、private/、issued/、reqs/、index.txt、serial），
方便运维人员沿用原有习惯排查。
"""

import os
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from loguru import logger

from .. import system
from ..errors import CAAlreadyExists, DuplicateSubject, PKIError
from .schemas import CertRole, IssuedCertificate

_SUBJECT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


def pki_paths(pki_dir: Path) -> Dict[str, Path]:
    """返回 PKI 目录中各文件的路径。"""
    return {
        "dir": pki_dir,
        "private": pki_dir / "private",
        "issued": pki_dir / "issued",
        "reqs": pki_dir / "reqs",
        "ca_cert": pki_dir / "ca.crt",
        "ca_key": pki_dir / "private" / "ca.key",
        "index": pki_dir / "index.txt",
        "serial": pki_dir / "serial",
        "dh": pki_dir / "dh.pem",
    }


def subject_paths(pki_dir: Path, subject: str) -> Dict[str, Path]:
    return {
        "cert": pki_dir / "issued" / f"{subject}.crt",
        "key": pki_dir / "private" / f"{subject}.key",
        "req": pki_dir / "reqs" / f"{subject}.req",
    }


def is_pki_initialized(pki_dir: Path) -> bool:
    p = pki_paths(pki_dir)
    return all(p[k].exists() for k in ("private", "issued", "reqs", "index", "serial"))


def init_pki(pki_dir: Path) -> bool:
    """
    初始化 PKI 目录结构。已初始化时直接跳过，不会清空已有内容。
    :return: 本次是否新建。
    """
    if is_pki_initialized(pki_dir):
        logger.info(f"PKI 已存在，跳过初始化: {pki_dir}")
        return False

    p = pki_paths(pki_dir)
    system.ensure_dir(pki_dir, 0o700)
    system.ensure_dir(p["private"], 0o700)
    system.ensure_dir(p["issued"])
    system.ensure_dir(p["reqs"])
    if not p["index"].exists():
        system.atomic_write(p["index"], "", 0o644)
    if not p["serial"].exists():
        system.atomic_write(p["serial"], "01\n", 0o644)
    logger.info(f"PKI 初始化完成: {pki_dir}")
    return True


def _require_initialized(pki_dir: Path) -> None:
    if not is_pki_initialized(pki_dir):
        raise PKIError(f"PKI 未初始化: {pki_dir}")


def _generate_key(key_size: int) -> rsa.RSAPrivateKey:
    # RouterOS 对 RSA 证书兼容性最好
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _key_bytes(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )


def _cn_name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def get_common_name(name: x509.Name) -> str | None:
    try:
        return name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    except (IndexError, AttributeError):
        return None


def load_ca(pki_dir: Path) -> Tuple[rsa.RSAPrivateKey, x509.Certificate]:
    """
    加载 CA 私钥与证书。
    :raises PKIError: CA 不存在或无法解析。
    """
    p = pki_paths(pki_dir)
    if not (p["ca_key"].exists() and p["ca_cert"].exists()):
        raise PKIError(f"CA 不存在: {p['ca_cert']}")
    try:
        ca_key = serialization.load_pem_private_key(p["ca_key"].read_bytes(), password=None)
        ca_cert = x509.load_pem_x509_certificate(p["ca_cert"].read_bytes())
    except ValueError as e:
        raise PKIError(f"CA 文件损坏: {e}")
    return ca_key, ca_cert


def ca_exists(pki_dir: Path) -> bool:
    # 只有私钥没有证书（写入 ca.crt 前被中断）不算可用的 CA
    p = pki_paths(pki_dir)
    return p["ca_cert"].exists() and p["ca_key"].exists()


def _load_orphan_ca_key(pki_dir: Path) -> rsa.RSAPrivateKey | None:
    p = pki_paths(pki_dir)
    if not p["ca_key"].exists() or p["ca_cert"].exists():
        return None
    try:
        key = serialization.load_pem_private_key(p["ca_key"].read_bytes(), password=None)
    except ValueError as e:
        logger.warning(f"遗留的 CA 私钥无法解析，将重新生成: {e}")
        return None
    if not isinstance(key, rsa.RSAPrivateKey):
        return None
    logger.warning(f"发现没有证书的 CA 私钥，用它重建 CA 证书: {p['ca_key']}")
    return key


def issue_ca(
    pki_dir: Path,
    common_name: str,
    days: int = 3650,
    key_size: int = 2048,
    force: bool = False,
) -> Path:
    """
    生成自签名根 CA。
    :param force: 为 True 时覆盖已有 CA（会使此前签发的所有证书失效）。
    只有私钥没有证书时沿用该私钥重建证书，已用它签发的证书仍然有效。
    :return: CA 证书路径。
    :raises CAAlreadyExists: 已有 CA 且未指定 force。
    """
    _require_initialized(pki_dir)
    p = pki_paths(pki_dir)
    if ca_exists(pki_dir) and not force:
        raise CAAlreadyExists(f"CA 已存在: {p['ca_cert']}")
    if force and ca_exists(pki_dir):
        logger.warning("强制重建 CA，此前签发的证书将全部失效")

    ca_key = None if force else _load_orphan_ca_key(pki_dir)
    if ca_key is None:
        ca_key = _generate_key(key_size)
    subject = _cn_name(common_name)
    now = datetime.now(timezone.utc)
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                key_encipherment=False,
                key_cert_sign=True,
                crl_sign=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        .sign(private_key=ca_key, algorithm=hashes.SHA256())
    )

    # 私钥先落盘，证书最后写入，中断时不会出现只有证书没有私钥的 CA
    system.atomic_write(p["ca_key"], _key_bytes(ca_key), 0o600)
    system.atomic_write(p["ca_cert"], ca_cert.public_bytes(Encoding.PEM), 0o644)
    logger.info(f"CA 证书已创建: CN={common_name}, sha256={ca_cert.fingerprint(hashes.SHA256()).hex()}")
    return p["ca_cert"]


def _next_serial(pki_dir: Path) -> int:
    """按 openssl 约定的十六进制 serial 文件分配序列号。"""
    serial_path = pki_paths(pki_dir)["serial"]
    try:
        current = int(serial_path.read_text(encoding="utf-8").strip() or "1", 16)
    except (OSError, ValueError):
        current = 1
    system.atomic_write(serial_path, f"{current + 1:02X}\n", 0o644)
    return current


def _index_has_subject(pki_dir: Path, subject: str) -> bool:
    index_path = pki_paths(pki_dir)["index"]
    if not index_path.exists():
        return False
    for line in index_path.read_text(encoding="utf-8").splitlines():
        fields = line.split("\t")
        if len(fields) >= 6 and fields[0] == "V" and fields[5] == f"/CN={subject}":
            return True
    return False


def _append_index(pki_dir: Path, cert: x509.Certificate, subject: str) -> None:
    index_path = pki_paths(pki_dir)["index"]
    current = index_path.read_text(encoding="utf-8") if index_path.exists() else ""
    expiry = cert.not_valid_after_utc.strftime("%y%m%d%H%M%SZ")
    entry = f"V\t{expiry}\t\t{cert.serial_number:02X}\tunknown\t/CN={subject}\n"
    system.atomic_write(index_path, current + entry, 0o644)


def is_issued(pki_dir: Path, subject: str) -> bool:
    return subject_paths(pki_dir, subject)["cert"].exists() or _index_has_subject(pki_dir, subject)


def _role_extensions(builder: x509.CertificateBuilder, subject: str, role: CertRole) -> x509.CertificateBuilder:
    if role is CertRole.SERVER:
        usage = dict(digital_signature=True, key_encipherment=True)
        eku = [ExtendedKeyUsageOID.SERVER_AUTH]
    else:
        usage = dict(digital_signature=True, key_encipherment=False)
        eku = [ExtendedKeyUsageOID.CLIENT_AUTH]
    builder = builder.add_extension(
        x509.KeyUsage(
            key_cert_sign=False,
            crl_sign=False,
            content_commitment=False,
            data_encipherment=False,
            key_agreement=False,
            encipher_only=False,
            decipher_only=False,
            **usage,
        ),
        critical=True,
    ).add_extension(x509.ExtendedKeyUsage(eku), critical=False)
    if role is CertRole.SERVER:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(subject)]), critical=False
        )
    return builder


def issue_certificate(
    pki_dir: Path,
    subject: str,
    role: CertRole,
    days: int = 3650,
    key_size: int = 2048,
) -> IssuedCertificate:
    """
    生成私钥与 CSR，并由本地 CA 签发证书。
    :param subject: 证书 Common Name，同时作为文件名。
    :param role: server 或 client，决定 KeyUsage / ExtendedKeyUsage。
    :raises DuplicateSubject: 该名称已签发过证书（不会改动已有文件）。
    :raises PKIError: 名称非法或 CA 不可用。
    """
    role = CertRole(role)
    if not _SUBJECT_RE.match(subject):
        raise PKIError(f"非法的证书名称: {subject!r}")
    _require_initialized(pki_dir)
    if is_issued(pki_dir, subject):
        raise DuplicateSubject(f"证书名称已被签发: {subject}")

    ca_key, ca_cert = load_ca(pki_dir)
    paths = subject_paths(pki_dir, subject)
    if paths["key"].exists():
        logger.warning(f"发现未完成签发遗留的私钥，将重新生成: {paths['key']}")

    key = _generate_key(key_size)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(_cn_name(subject))
        .sign(key, hashes.SHA256())
    )

    serial = _next_serial(pki_dir)
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(ca_cert.subject)
        .public_key(csr.public_key())
        .serial_number(serial)
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
        )
    )
    builder = _role_extensions(builder, subject, role)
    cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())

    system.atomic_write(paths["key"], _key_bytes(key), 0o600)
    system.atomic_write(paths["req"], csr.public_bytes(Encoding.PEM), 0o644)
    system.atomic_write(paths["cert"], cert.public_bytes(Encoding.PEM), 0o644)
    _append_index(pki_dir, cert, subject)

    logger.info(f"已签发 {role.value} 证书: CN={subject}, serial=0x{serial:02X}")
    return IssuedCertificate(
        subject=subject,
        role=role,
        cert_path=paths["cert"],
        key_path=paths["key"],
        ca_cert_path=pki_paths(pki_dir)["ca_cert"],
        serial=serial,
    )


def load_issued(pki_dir: Path, subject: str, role: CertRole) -> IssuedCertificate:
    """读取已签发证书的信息（用于幂等的重复运行）。"""
    paths = subject_paths(pki_dir, subject)
    if not (paths["cert"].exists() and paths["key"].exists()):
        raise PKIError(f"证书或私钥缺失: {subject}")
    cert = x509.load_pem_x509_certificate(paths["cert"].read_bytes())
    return IssuedCertificate(
        subject=subject,
        role=CertRole(role),
        cert_path=paths["cert"],
        key_path=paths["key"],
        ca_cert_path=pki_paths(pki_dir)["ca_cert"],
        serial=cert.serial_number,
    )


def verify_issued_by_ca(pki_dir: Path, cert_path: Path) -> bool:
    """
    验证一个证书是否由本 PKI 的 CA 签发。
    比较签发者与 CA 主体，并用 CA 公钥校验签名。
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
        _, ca_cert = load_ca(pki_dir)
    except (OSError, ValueError, PKIError) as e:
        logger.warning(f"验证证书归属时发生错误: {e}")
        return False
    if cert.issuer != ca_cert.subject:
        return False
    try:
        cert.verify_directly_issued_by(ca_cert)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def ensure_private_key_mode(path: Path) -> None:
    """私钥权限必须为 0600。"""
    if path.exists() and (path.stat().st_mode & 0o777) != 0o600:
        logger.warning(f"修正私钥权限为 0600: {path}")
        os.chmod(path, 0o600)


def archive_ca_material(pki_dir: Path) -> Path | None:
    """
    重建 CA 前把旧 CA 与其签发的证书、私钥、请求整体移到 revoked/<时间戳>/，
    index.txt 中的有效条目标记为吊销（R）。旧材料只移动不删除。
    :return: 归档目录；没有可归档内容时返回 None。
    """
    p = pki_paths(pki_dir)
    # ca.crt 最先移走，中断后留下的 ca.key 由 issue_ca 重建为同一个 CA
    moves: list[tuple[Path, str]] = []
    if p["ca_cert"].exists():
        moves.append((p["ca_cert"], ""))
    for name, pattern in (("issued", "*.crt"), ("private", "*.key"), ("reqs", "*.req")):
        if p[name].exists():
            moves += [(f, name) for f in sorted(p[name].glob(pattern))]
    if not moves:
        return None

    now = datetime.now(timezone.utc)
    archive = p["dir"] / "revoked" / now.strftime("%Y%m%d%H%M%S%f")
    system.ensure_dir(archive, 0o700)
    for f, sub in moves:
        target_dir = archive / sub if sub else archive
        system.ensure_dir(target_dir, 0o700)
        os.replace(f, target_dir / f.name)

    if p["index"].exists():
        revoked_at = now.strftime("%y%m%d%H%M%SZ")
        lines = []
        for line in p["index"].read_text(encoding="utf-8").splitlines():
            fields = line.split("\t")
            if len(fields) >= 6 and fields[0] == "V":
                fields[0], fields[2] = "R", revoked_at
            lines.append("\t".join(fields))
        system.atomic_write(p["index"], "".join(f"{l}\n" for l in lines), 0o644)

    logger.warning(f"旧 CA 及其签发的证书已归档到 {archive}")
    return archive
