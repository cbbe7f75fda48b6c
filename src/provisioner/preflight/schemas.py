"""
预检阶段的数据模型定义。
"""

from pydantic import BaseModel, Field


class HostInfo(BaseModel):
    """宿主系统信息。"""

    os_id: str = Field(description="/etc/os-release 中的 ID")
    os_like: list[str] = Field(default_factory=list, description="ID_LIKE 列表")
    version_id: str | None = None
    pretty_name: str | None = None
