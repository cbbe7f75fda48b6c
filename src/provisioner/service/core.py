"""
OpenVPN 服务控制。

负责启用、重启并轮询 systemd 单元，直到进入 active 或超时。
状态机：stopped -> starting -> active；超时或启动命令失败时 starting -> failed。
"""

from __future__ import annotations

import subprocess
import time
from typing import Callable

from loguru import logger

from .. import system
from ..errors import ServiceStartTimeout
from .schemas import ServiceState, ServiceStatus


def _systemctl(*args: str) -> subprocess.CompletedProcess:
    return system.run_command(["systemctl", *args], timeout=60)


def is_active(unit: str) -> bool:
    result = _systemctl("is-active", unit)
    return result.returncode == 0 and result.stdout.strip() == "active"


def is_enabled(unit: str) -> bool:
    result = _systemctl("is-enabled", unit)
    return result.returncode == 0 and result.stdout.strip() == "enabled"


class ServiceController:
    def __init__(
        self,
        unit: str,
        timeout_s: float = 30.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.unit = unit
        self.timeout_s = timeout_s
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self.state = ServiceState.STOPPED

    @property
    def log_command(self) -> str:
        return f"journalctl -u {self.unit}"

    def _fail(self, message: str) -> ServiceStartTimeout:
        self.state = ServiceState.FAILED
        logger.error(f"{message}，请查看日志: {self.log_command}")
        return ServiceStartTimeout(message, hint=f"{self.log_command} -n 50 --no-pager")

    def _wait_active(self) -> float | None:
        """轮询 is-active，返回等待时长；超时返回 None。"""
        start = self._clock()
        deadline = start + self.timeout_s
        while True:
            if is_active(self.unit):
                return self._clock() - start
            if self._clock() >= deadline:
                return None
            self._sleep(self.poll_interval)

    def start(self) -> ServiceStatus:
        """
        启用并（重新）启动服务，使其加载最新配置。
        :raises ServiceStartTimeout: 启动命令失败或未在超时内进入 active。
        """
        self.state = ServiceState.STARTING
        logger.info(f"启动服务 {self.unit} ...")

        enable = _systemctl("enable", self.unit)
        if enable.returncode != 0:
            raise self._fail(f"无法启用 {self.unit}: {enable.stderr.strip()}")
        restart = _systemctl("restart", self.unit)
        if restart.returncode != 0:
            raise self._fail(f"无法启动 {self.unit}: {restart.stderr.strip()}")

        waited = self._wait_active()
        if waited is None:
            raise self._fail(f"{self.unit} 未在 {self.timeout_s:g}s 内进入 active 状态")

        self.state = ServiceState.ACTIVE
        enabled = is_enabled(self.unit)
        if not enabled:
            logger.warning(f"{self.unit} 已运行但未设置开机自启")
        logger.info(f"OpenVPN 服务已运行: {self.unit} (等待 {waited:.1f}s)")
        return ServiceStatus(unit=self.unit, state=self.state, active=True, enabled=enabled, waited_s=waited)

    def status(self) -> ServiceStatus:
        active = is_active(self.unit)
        if active:
            self.state = ServiceState.ACTIVE
        elif self.state is ServiceState.ACTIVE:
            self.state = ServiceState.STOPPED
        return ServiceStatus(unit=self.unit, state=self.state, active=active, enabled=is_enabled(self.unit))
