"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类（整个流水线显式传递的参数对象）
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_list: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # VPN 网络参数（MikroTik RouterOS 7 兼容）
    network: str = "10.8.0.0/24"
    port: int = 1194
    proto: str = "udp"
    dev: str = "tun"
    cipher: str = "AES-256-CBC"
    auth: str = "SHA256"
    keepalive_interval: int = 10
    keepalive_timeout: int = 120

    # 证书
    client_name: str = "mikrotik-client"
    server_name: str = "server"
    ca_common_name: str = "OpenVPN-CA"
    ca_days: int = 3650
    cert_days: int = 3650
    key_size: int = 2048
    dh_key_size: int = 2048
    force_ca: bool = False

    # 路径
    pki_dir: Path = Path("/etc/openvpn/server/easy-rsa/pki")
    server_dir: Path = Path("/etc/openvpn/server")
    systemd_dir: Path = Path("/etc/systemd/system")
    sysctl_dropin: Path = Path("/etc/sysctl.d/99-openvpn-forward.conf")
    export_root: Path = Path("/root/mikrotik-files")
    report_path: Path = Path("/root/openvpn-mikrotik-report.txt")
    os_release_path: Path = Path("/etc/os-release")
    log_file: Path = Path("/var/log/openvpn-mikrotik-install.log")

    # 服务
    unit_name: str = "openvpn-server@server"
    service_timeout: float = 30.0
    service_poll_interval: float = 1.0

    # 外网地址探测
    ip_lookup_urls: Annotated[List[str], NoDecode] = ["https://ifconfig.me/ip", "https://icanhazip.com"]
    ip_lookup_timeout: float = 5.0

    # 主机
    supported_os: Annotated[List[str], NoDecode] = ["rocky", "almalinux", "centos", "fedora", "rhel"]
    packages: Annotated[List[str], NoDecode] = ["openvpn", "openssl", "firewalld"]

    log_level: str = "INFO"

    # pydantic v2 风格配置（等价于旧版的 class Config）
    model_config = SettingsConfigDict(
        env_prefix="OVPN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ip_lookup_urls", "supported_os", "packages", mode="before")
    @classmethod
    def parse_list(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析列表字段。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白）
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @field_validator("proto", "dev", "log_level", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("proto", "dev")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()

    @field_validator("cipher", "auth", "log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def server_config_path(self) -> Path:
        return self.server_dir / "server.conf"

    @property
    def bundle_dir(self) -> Path:
        return self.export_root / self.client_name

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )

