"""
文件功能：
    定义整条部署流水线的结果模型（Pydantic）。

公开接口：
    - PipelineResult: 八个阶段的产物汇总与降级告警
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from ..bundle.core import ClientBundle
from ..host.schemas import HostMutationReport
from ..pki.schemas import PKIArtifacts
from ..preflight.schemas import HostInfo
from ..report.schemas import ConnectionReport
from ..service.schemas import ServiceStatus


class PipelineResult(BaseModel):
    host: HostInfo
    installed_packages: list[str] = Field(default_factory=list)
    openvpn_version: tuple[int, int, int]
    pki: PKIArtifacts
    server_config: Path
    host_state: HostMutationReport
    service: ServiceStatus
    bundle: ClientBundle
    report: ConnectionReport
    warnings: list[str] = Field(default_factory=list, description="可降级步骤的失败记录")

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)
