"""
PKI 管理的数据模型定义。
"""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class CertRole(str, Enum):
    SERVER = "server"
    CLIENT = "client"


class IssuedCertificate(BaseModel):
    """
    由本地 CA 签发的一张证书及其私钥位置。
    """
    subject: str
    role: CertRole
    cert_path: Path
    key_path: Path
    ca_cert_path: Path
    serial: int


class ServerCredentials(BaseModel):
    """
    安装到 OpenVPN 服务目录中的服务端凭据（server.conf 以相对路径引用）。
    """
    ca_cert: Path
    cert: Path
    key: Path
    dh: Path


class PKIArtifacts(BaseModel):
    """PKI 阶段的全部产物。"""

    pki_dir: Path
    ca_cert: Path
    server: IssuedCertificate
    client: IssuedCertificate
    dh: Path
    installed: ServerCredentials
    created: list[str] = Field(default_factory=list, description="本次运行新建的条目")
