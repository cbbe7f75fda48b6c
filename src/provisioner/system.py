"""
与宿主系统交互的底层工具：外部命令执行、原子写文件、目录创建。

所有阶段都通过本模块调用外部命令，测试中只需替换 run_command 即可模拟整台主机。
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path
from typing import Sequence

from loguru import logger


def run_command(
    cmd: Sequence[str],
    *,
    check: bool = False,
    timeout: float | None = 120,
    cwd: str | Path | None = None,
) -> subprocess.CompletedProcess:
    """
    执行外部命令并捕获输出。
    :param cmd: 命令及参数。
    :param check: 为 True 时非零退出码抛出 CalledProcessError。
    :param timeout: 超时时间（秒）。
    :return: CompletedProcess。
    """
    logger.debug(f"Executing command: {' '.join(cmd)}")
    result = subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        timeout=timeout,
        cwd=str(cwd) if cwd else None,
    )
    if result.returncode != 0:
        logger.debug(f"命令返回 {result.returncode}: {result.stderr.strip()}")
        if check:
            raise subprocess.CalledProcessError(
                result.returncode, list(cmd), output=result.stdout, stderr=result.stderr
            )
    return result


def ensure_dir(path: Path, mode: int | None = None) -> None:
    path.mkdir(parents=True, exist_ok=True)
    if mode is not None:
        os.chmod(path, mode)


def atomic_write(path: Path, data: bytes | str, mode: int = 0o644) -> None:
    """
    先写入同目录临时文件再 rename，保证中断时目标文件要么是旧内容要么是完整新内容。
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_if_changed(path: Path, text: str, mode: int = 0o644) -> bool:
    """内容一致时不写入，返回是否发生了变更。"""
    current = path.read_text(encoding="utf-8") if path.exists() else None
    if current == text:
        return False
    atomic_write(path, text, mode)
    return True
