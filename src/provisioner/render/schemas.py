"""
服务端配置渲染的数据模型定义。
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field


class ServerParams(BaseModel):
    """
    渲染 server.conf 所需的全部参数。
    """
    port: int
    proto: str
    dev: str
    cipher: str
    auth: str
    network: str = Field(description="CIDR 形式，例如 10.8.0.0/24")
    keepalive_interval: int = 10
    keepalive_timeout: int = 120
    ca: Path
    cert: Path
    key: Path
    dh: Path
    server_dir: Path = Field(description="服务运行目录，证书路径相对它输出")
    user: str = "nobody"
    group: str = "nobody"
    verb: int = 3
    status_log: str = "/var/log/openvpn-status.log"
    log_append: str = "/var/log/openvpn.log"


class RenderedConfig(BaseModel):
    """已写入磁盘的配置文件。"""

    path: Path
    changed: bool
    openvpn_version: tuple[int, int, int]
