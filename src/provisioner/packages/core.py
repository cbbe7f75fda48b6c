"""
依赖安装：确保 openvpn / openssl / firewalld 等软件包存在，并探测 OpenVPN 版本。
"""

from __future__ import annotations

import re
import subprocess
from typing import List, Sequence

from loguru import logger

from .. import system
from ..errors import DependencyInstallFailure

_VERSION_RE = re.compile(r"OpenVPN (\d+)\.(\d+)(?:\.(\d+))?")


def _is_installed(package: str) -> bool:
    return system.run_command(["rpm", "-q", package]).returncode == 0


def missing_packages(packages: Sequence[str]) -> List[str]:
    return [p for p in packages if not _is_installed(p)]


def _dnf_install(packages: Sequence[str]) -> None:
    cmd = ["dnf", "install", "-y", *packages]
    try:
        system.run_command(cmd, check=True, timeout=1800)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        detail = getattr(e, "stderr", None) or str(e)
        raise DependencyInstallFailure(f"安装 {' '.join(packages)} 失败: {detail}")


def ensure_packages(packages: Sequence[str], os_id: str) -> List[str]:
    """
    安装缺失的软件包，已安装则跳过。
    EL 系发行版的 openvpn 来自 EPEL，需先安装 epel-release；Fedora 不需要。
    :return: 本次实际安装的软件包列表。
    """
    missing = missing_packages(packages)
    if not missing:
        logger.info(f"依赖已就绪，跳过安装: {', '.join(packages)}")
        return []

    installed: List[str] = []
    if os_id != "fedora" and not _is_installed("epel-release"):
        logger.info("安装 epel-release ...")
        _dnf_install(["epel-release"])
        installed.append("epel-release")

    logger.info(f"安装依赖: {', '.join(missing)}")
    _dnf_install(missing)
    installed.extend(missing)
    return installed


def parse_openvpn_version(text: str) -> tuple[int, int, int]:
    m = _VERSION_RE.search(text)
    if not m:
        raise ValueError(f"无法识别 OpenVPN 版本: {text[:80]!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)


def detect_openvpn_version() -> tuple[int, int, int]:
    """执行 openvpn --version 并解析版本号（该命令在部分版本上以非零码退出）。"""
    try:
        result = system.run_command(["openvpn", "--version"], timeout=30)
    except OSError as e:
        raise DependencyInstallFailure(f"未找到 openvpn 可执行文件: {e}")
    try:
        version = parse_openvpn_version(result.stdout or result.stderr)
    except ValueError as e:
        raise DependencyInstallFailure(str(e))
    if version < (2, 4, 0):
        raise DependencyInstallFailure(
            f"OpenVPN {'.'.join(map(str, version))} 过旧，至少需要 2.4"
        )
    logger.info(f"OpenVPN version {'.'.join(map(str, version))} installed")
    return version
