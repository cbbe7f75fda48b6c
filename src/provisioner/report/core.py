"""
最终报告：探测外网地址并生成 MikroTik 侧的配置说明。

地址探测按顺序尝试：外部查询服务 A、外部查询服务 B、本机网卡地址，
任一方法失败都不会中断流程；全部失败时使用占位符并把报告标记为不完整，
绝不把不可靠的地址当作结果。
"""

from __future__ import annotations

import ipaddress
import subprocess
from pathlib import Path
from typing import Sequence

import httpx
from loguru import logger

from .. import system
from ..errors import AddressResolutionFailure
from ..render.core import ROUTEROS_AUTH, ROUTEROS_CIPHERS
from .schemas import PLACEHOLDER_ADDRESS, AddressResolution, ConnectionReport


def _validate_ipv4(text: str, source: str) -> str:
    candidate = text.strip()
    try:
        addr = ipaddress.IPv4Address(candidate)
    except ValueError:
        raise AddressResolutionFailure(f"{source} 返回的不是 IPv4 地址: {candidate[:60]!r}")
    if addr.is_loopback or addr.is_unspecified:
        raise AddressResolutionFailure(f"{source} 返回了不可用地址: {addr}")
    return str(addr)


def lookup_http(client: httpx.Client, url: str) -> str:
    """通过外部 HTTP 服务查询出口 IPv4 地址（相当于 curl -4）。"""
    try:
        r = client.get(url, headers={"User-Agent": "curl/8.0", "Accept": "text/plain"})
        r.raise_for_status()
    except httpx.HTTPError as e:
        raise AddressResolutionFailure(f"{url} 查询失败: {e}")
    return _validate_ipv4(r.text, url)


def lookup_local() -> str:
    """取 hostname -I 输出中的第一个 IPv4 地址。"""
    try:
        result = system.run_command(["hostname", "-I"], timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise AddressResolutionFailure(f"hostname -I 执行失败: {e}")
    for token in result.stdout.split():
        try:
            return _validate_ipv4(token, "hostname -I")
        except AddressResolutionFailure:
            continue
    raise AddressResolutionFailure("hostname -I 未返回可用的 IPv4 地址")


def resolve_external_address(
    urls: Sequence[str],
    timeout: float = 5.0,
    transport: httpx.BaseTransport | None = None,
) -> AddressResolution:
    """
    依次尝试各查询服务与本机网卡地址，全部失败时返回占位符结果。
    所有查询服务共用同一个 Client，默认只走 IPv4。
    """
    errors: list[str] = []
    transport = transport or httpx.HTTPTransport(local_address="0.0.0.0")
    with httpx.Client(transport=transport, timeout=timeout, follow_redirects=True) as client:
        for url in urls:
            try:
                address = lookup_http(client, url)
            except AddressResolutionFailure as e:
                logger.warning(str(e))
                errors.append(str(e))
                continue
            logger.info(f"External IP detected: {address} (via {url})")
            return AddressResolution(address=address, source=url, resolved=True, errors=errors)

    try:
        address = lookup_local()
    except AddressResolutionFailure as e:
        logger.warning(str(e))
        errors.append(str(e))
    else:
        logger.info(f"使用本机网卡地址: {address}")
        return AddressResolution(address=address, source="hostname -I", resolved=True, errors=errors)

    logger.warning(f"无法探测外网地址，请手动将 {PLACEHOLDER_ADDRESS} 替换为服务器地址")
    return AddressResolution(errors=errors)


def render_report(
    address: AddressResolution,
    params: dict,
    bundle_dir: Path,
    client: str,
    unit: str,
    warnings: Sequence[str] = (),
) -> str:
    """
    生成最终说明文本。
    :param params: 从已写入的 server.conf 读回的连接参数（render.core.params_from_config）。
    """
    ip = address.address
    cipher = params["cipher"]
    auth = params["auth"]
    port = params["port"]
    proto = params["proto"]
    mode = "ip" if params["dev"] == "tun" else "ethernet"
    network = ipaddress.IPv4Network(params["network"])
    sample = f"{'.'.join(str(network.network_address).split('.')[:3])}.x"

    lines = [
        "=" * 60,
        "INSTALLATION COMPLETE - MIKROTIK READY",
        "=" * 60,
        "",
    ]
    if not address.resolved:
        lines += [
            f"!! 报告不完整：未能探测到服务器外网地址，请将 {PLACEHOLDER_ADDRESS} 替换为实际地址",
            "",
        ]
    lines += [
        "SERVER INFORMATION:",
        f"  IP Address: {ip}",
        f"  Port:       {port} ({proto.upper()})",
        f"  Cipher:     {cipher}",
        f"  Auth:       {auth}",
        f"  Network:    {network}",
        "",
        f"CLIENT FILES (for MikroTik): {bundle_dir}",
        "  ca.crt",
        f"  {client}.crt",
        f"  {client}.key",
        "",
        "MIKROTIK SETUP:",
        "  1. Upload the three files (Winbox: Files -> drag & drop)",
        "  2. Import certificates:",
        '     /certificate import file-name=ca.crt passphrase=""',
        f'     /certificate import file-name={client}.crt passphrase=""',
        f'     /certificate import file-name={client}.key passphrase=""',
        "  3. Verify: /certificate print",
        f"     # expect ca.crt_0 and {client}.crt_0",
        "  4. Create the OVPN client interface:",
        "     /interface ovpn-client add \\",
        "       name=ovpn-to-vps \\",
        f"       connect-to={ip} \\",
        f"       port={port} \\",
        f"       mode={mode} \\",
        f"       protocol={proto} \\",
        f"       certificate={client}.crt_0 \\",
        f"       auth={ROUTEROS_AUTH.get(auth, auth.lower())} \\",
        f"       cipher={ROUTEROS_CIPHERS.get(cipher, cipher.lower())} \\",
        "       add-default-route=no \\",
        "       dont-add-pushed-routes=yes \\",
        "       verify-server-certificate=yes \\",
        "       use-peer-dns=no",
        "  5. Enable and check:",
        "     /interface ovpn-client enable ovpn-to-vps",
        "     /interface ovpn-client monitor ovpn-to-vps once",
        "     /ip address print where interface=ovpn-to-vps",
        f"     # expect an address from {sample}",
        "",
        "ADDITIONAL CLIENTS:",
        "  ovpn-mikrotik-add-client <client-name>",
        "",
        "VERIFICATION (on server):",
        f"  systemctl status {unit}",
        "  cat /var/log/openvpn-status.log",
        f"  journalctl -u {unit} -f",
        "  firewall-cmd --list-all",
        "",
        "TROUBLESHOOTING:",
        '  MikroTik: /log print where topics~"ovpn"',
        f"  Server:   journalctl -u {unit} -f",
    ]
    if warnings:
        lines += ["", "WARNINGS (degraded steps):"]
        lines += [f"  - {w}" for w in warnings]
    return "\n".join(lines) + "\n"


def write_report(
    path: Path,
    address: AddressResolution,
    params: dict,
    bundle_dir: Path,
    client: str,
    unit: str,
    warnings: Sequence[str] = (),
) -> ConnectionReport:
    warnings = list(warnings)
    if not address.resolved:
        warnings.append(f"外网地址未确定，报告中使用占位符 {PLACEHOLDER_ADDRESS}")
    text = render_report(address, params, bundle_dir, client, unit, warnings)
    system.atomic_write(path, text, 0o600)
    logger.info(f"连接说明已写入: {path}")
    return ConnectionReport(
        text=text,
        path=path,
        address=address,
        incomplete=bool(warnings),
        warnings=warnings,
    )
