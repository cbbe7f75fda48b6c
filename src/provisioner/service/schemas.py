"""
文件功能：
    定义 OpenVPN 服务控制相关的公开数据模型（Pydantic）。

公开接口：
    - ServiceState: 服务状态机的状态
    - ServiceStatus: 服务状态快照
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    FAILED = "failed"


class ServiceStatus(BaseModel):
    """服务运行状态。"""

    unit: str = Field(description="systemd 单元名")
    state: ServiceState = Field(description="状态机当前状态")
    active: bool = Field(description="systemctl is-active 是否为 active")
    enabled: bool = Field(description="systemctl is-enabled 是否为 enabled")
    waited_s: float = Field(default=0.0, description="等待进入 active 所用时间")
