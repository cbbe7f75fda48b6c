"""
OpenVPN 服务端配置渲染。

公开接口：
- validate_params: 校验参数组合是否同时被服务端 OpenVPN 版本与 RouterOS 客户端支持
- render_server_config: 参数 -> 配置文本（纯函数）
- write_server_config: 原子写入配置文件
- parse_server_config / params_from_config: 读回配置文件

RouterOS 的 ovpn-client 不支持 tls-auth / tls-crypt，也不做 cipher 协商，
因此配置中绝不输出这些指令，并在 2.5+ 上显式把所选 cipher 放入 data-ciphers。
"""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Dict

from loguru import logger

from .. import system
from ..errors import RenderValidationFailure
from .schemas import RenderedConfig, ServerParams

# OpenVPN cipher 名称 -> RouterOS ovpn-client cipher 名称
ROUTEROS_CIPHERS: Dict[str, str] = {
    "AES-128-CBC": "aes128-cbc",
    "AES-192-CBC": "aes192-cbc",
    "AES-256-CBC": "aes256-cbc",
    "AES-128-GCM": "aes128-gcm",
    "AES-256-GCM": "aes256-gcm",
    "BF-CBC": "blowfish128",
}

ROUTEROS_AUTH: Dict[str, str] = {
    "SHA1": "sha1",
    "SHA256": "sha256",
    "SHA512": "sha512",
}

# OpenSSL 3 起 BF-CBC 属于 legacy provider，OpenVPN 2.6 默认不可用
_LEGACY_CIPHERS = {"BF-CBC"}

FORBIDDEN_DIRECTIVES = ("tls-auth", "tls-crypt", "tls-crypt-v2")


def server_ciphers(version: tuple[int, int, int]) -> set[str]:
    ciphers = set(ROUTEROS_CIPHERS)
    if version >= (2, 6, 0):
        ciphers -= _LEGACY_CIPHERS
    return ciphers


def validate_params(params: ServerParams, version: tuple[int, int, int]) -> ipaddress.IPv4Network:
    """
    校验参数一致性，返回解析后的网络。
    :raises RenderValidationFailure: 任一参数不被支持。
    """
    if version < (2, 4, 0):
        raise RenderValidationFailure(f"不支持的 OpenVPN 版本: {'.'.join(map(str, version))}")
    if not 1 <= params.port <= 65535:
        raise RenderValidationFailure(f"端口超出范围: {params.port}")
    if params.proto not in ("udp", "tcp"):
        raise RenderValidationFailure(f"不支持的协议: {params.proto}")
    if params.dev not in ("tun", "tap"):
        raise RenderValidationFailure(f"不支持的设备类型: {params.dev}")
    if params.cipher not in server_ciphers(version):
        raise RenderValidationFailure(
            f"cipher {params.cipher} 不被 OpenVPN {'.'.join(map(str, version))} 与 RouterOS 同时支持"
        )
    if params.auth not in ROUTEROS_AUTH:
        raise RenderValidationFailure(f"auth {params.auth} 不被 RouterOS 支持")
    if params.keepalive_interval <= 0 or params.keepalive_timeout <= params.keepalive_interval:
        raise RenderValidationFailure(
            f"keepalive 参数无效: {params.keepalive_interval} {params.keepalive_timeout}"
        )
    try:
        network = ipaddress.IPv4Network(params.network, strict=True)
    except ValueError as e:
        raise RenderValidationFailure(f"无效的 VPN 网段 {params.network}: {e}")
    if network.prefixlen > 29:
        raise RenderValidationFailure(f"VPN 网段过小: {network}")
    return network


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def render_server_config(params: ServerParams, version: tuple[int, int, int]) -> str:
    """
    渲染 server.conf 文本。
    """
    network = validate_params(params, version)
    d = params.server_dir
    lines = [
        "# OpenVPN server configuration for MikroTik RouterOS 7",
        "# Managed by ovpn-mikrotik-install; manual edits are overwritten on the next run.",
        "# No tls-auth / tls-crypt: RouterOS does not support them.",
        "",
        "# Basic settings",
        f"port {params.port}",
        f"proto {params.proto}",
        f"dev {params.dev}",
        "",
        "# Certificate paths",
        f"ca {_relative(params.ca, d)}",
        f"cert {_relative(params.cert, d)}",
        f"key {_relative(params.key, d)}",
        f"dh {_relative(params.dh, d)}",
        "",
        "# Cipher and authentication (MikroTik compatible)",
        f"cipher {params.cipher}",
        f"auth {params.auth}",
    ]
    if version >= (2, 5, 0):
        data_ciphers = ["AES-256-GCM", "AES-128-GCM"]
        if params.cipher not in data_ciphers:
            data_ciphers.append(params.cipher)
        lines += [
            f"data-ciphers {':'.join(data_ciphers)}",
            f"data-ciphers-fallback {params.cipher}",
        ]
    lines += [
        "",
        "# Network configuration",
        f"server {network.network_address} {network.netmask}",
        "topology subnet",
        "ifconfig-pool-persist ipp.txt",
        "",
        f"keepalive {params.keepalive_interval} {params.keepalive_timeout}",
        "",
        "persist-key",
        "persist-tun",
        f"user {params.user}",
        f"group {params.group}",
        "",
        f"verb {params.verb}",
        f"status {params.status_log}",
        f"log-append {params.log_append}",
    ]
    if params.proto == "udp":
        lines.append("explicit-exit-notify 1")
    text = "\n".join(lines) + "\n"

    parsed = parse_server_config(text)
    leaked = [k for k in FORBIDDEN_DIRECTIVES if k in parsed]
    if leaked:
        raise RenderValidationFailure(f"配置中出现 RouterOS 不支持的指令: {', '.join(leaked)}")
    return text


def write_server_config(path: Path, params: ServerParams, version: tuple[int, int, int]) -> RenderedConfig:
    """渲染并原子写入配置文件，重复渲染直接覆盖。"""
    text = render_server_config(params, version)
    changed = system.write_if_changed(path, text, 0o644)
    logger.info(f"服务端配置{'已写入' if changed else '未变化'}: {path}")
    return RenderedConfig(path=path, changed=changed, openvpn_version=version)


def parse_server_config(text: str) -> Dict[str, str]:
    """
    解析 OpenVPN 配置文本为 {指令: 参数字符串}，忽略注释与空行。
    无参数指令（如 persist-key）的值为空字符串。
    """
    directives: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line[0] in "#;":
            continue
        parts = line.split(None, 1)
        directives[parts[0]] = parts[1].strip() if len(parts) > 1 else ""
    return directives


def params_from_config(text: str) -> Dict[str, object]:
    """从配置文本读回关键连接参数。"""
    d = parse_server_config(text)
    net, mask = d["server"].split()
    network = ipaddress.IPv4Network(f"{net}/{mask}", strict=True)
    return {
        "port": int(d["port"]),
        "proto": d["proto"],
        "dev": d["dev"],
        "cipher": d["cipher"],
        "auth": d["auth"],
        "network": str(network),
        "netmask": mask,
        "topology": d.get("topology"),
    }
