"""
客户端文件导出：把 ca.crt、<client>.crt、<client>.key 复制到导出目录，
RouterOS 的 /certificate import 可直接导入这三个文件。
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict

from loguru import logger
from pydantic import BaseModel

from .. import system
from ..errors import BundleExistsError, PKIError
from ..pki import core as pki_core
from ..pki.schemas import IssuedCertificate


class ClientBundle(BaseModel):
    client: str
    directory: Path
    files: list[Path]
    exported: bool


def bundle_files(directory: Path, client: str) -> Dict[str, Path]:
    return {
        "ca": directory / "ca.crt",
        "cert": directory / f"{client}.crt",
        "key": directory / f"{client}.key",
    }


def export_bundle(
    pki_dir: Path,
    issued: IssuedCertificate,
    directory: Path,
    overwrite: bool = False,
) -> ClientBundle:
    """
    导出客户端证书包。目录 0700，文件 0600，仅属主可读。
    :param overwrite: 已存在内容不同的证书包时是否覆盖。
    :raises PKIError: 客户端证书不是由本 CA 签发。
    :raises BundleExistsError: 已存在不同内容的证书包且未确认覆盖。
    """
    if not pki_core.verify_issued_by_ca(pki_dir, issued.cert_path):
        raise PKIError(f"客户端证书不是由当前 CA 签发: {issued.cert_path}")

    targets = bundle_files(directory, issued.subject)
    sources = {
        "ca": issued.ca_cert_path,
        "cert": issued.cert_path,
        "key": issued.key_path,
    }
    contents = {k: sources[k].read_bytes() for k in sources}

    existing = [k for k, p in targets.items() if p.exists()]
    if existing:
        same = len(existing) == len(targets) and all(
            targets[k].read_bytes() == contents[k] for k in targets
        )
        if same:
            logger.info(f"客户端文件已是最新，跳过导出: {directory}")
            return ClientBundle(
                client=issued.subject, directory=directory, files=list(targets.values()), exported=False
            )
        if not overwrite:
            raise BundleExistsError(f"客户端 {issued.subject} 的文件已存在且内容不同: {directory}")
        logger.warning(f"覆盖已有客户端文件: {directory}")

    system.ensure_dir(directory, 0o700)
    for k, path in targets.items():
        system.atomic_write(path, contents[k], 0o600)

    logger.info(f"Client files are ready in: {directory}")
    return ClientBundle(client=issued.subject, directory=directory, files=list(targets.values()), exported=True)
