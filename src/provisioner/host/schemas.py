"""
主机状态变更的数据模型定义。
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class SubOperationResult(BaseModel):
    """单个子操作（sysctl / firewall / systemd override）的执行结果。"""

    name: str
    ok: bool
    changed: bool = False
    detail: str = ""
    hint: str | None = None


class HostMutationReport(BaseModel):
    """三个子操作的汇总，某一项失败不影响其余项的执行与上报。"""

    results: list[SubOperationResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def first_failure(self) -> SubOperationResult | None:
        return next((r for r in self.results if not r.ok), None)

    @property
    def succeeded(self) -> list[str]:
        return [r.name for r in self.results if r.ok]

    def get(self, name: str) -> SubOperationResult | None:
        return next((r for r in self.results if r.name == name), None)
