"""
预检：确认运行权限与宿主系统是否受支持。

本阶段只读，不对系统做任何修改。
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Dict, Iterable

from loguru import logger

from ..errors import InsufficientPrivilege, UnsupportedHost
from .schemas import HostInfo


def parse_os_release(text: str) -> Dict[str, str]:
    """解析 os-release 格式（KEY=value，值可带引号）。"""
    data: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        try:
            parts = shlex.split(value)
            data[key.strip()] = parts[0] if parts else ""
        except ValueError:
            data[key.strip()] = value.strip().strip("\"'")
    return data


def check_privilege() -> None:
    if os.geteuid() != 0:
        raise InsufficientPrivilege("必须以 root 身份运行（请使用 sudo）")


def detect_host(os_release_path: Path, supported: Iterable[str]) -> HostInfo:
    """
    读取 os-release 并判断是否属于受支持的发行版家族。
    :raises UnsupportedHost: 文件缺失或发行版不在支持列表内。
    """
    try:
        data = parse_os_release(os_release_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise UnsupportedHost(f"无法读取 {os_release_path}: {e}")

    info = HostInfo(
        os_id=data.get("ID", "").lower(),
        os_like=data.get("ID_LIKE", "").lower().split(),
        version_id=data.get("VERSION_ID"),
        pretty_name=data.get("PRETTY_NAME"),
    )
    supported_ids = {s.lower() for s in supported}
    if info.os_id not in supported_ids and not supported_ids.intersection(info.os_like):
        raise UnsupportedHost(
            f"不支持的系统 {info.pretty_name or info.os_id or '未知'}，"
            f"仅支持: {', '.join(sorted(supported_ids))}"
        )
    return info


def run_preflight(os_release_path: Path, supported: Iterable[str]) -> HostInfo:
    check_privilege()
    info = detect_host(os_release_path, supported)
    logger.info(f"预检通过: {info.pretty_name or info.os_id} (version={info.version_id})")
    return info
