"""
最终报告的数据模型定义。
"""

from pathlib import Path

from pydantic import BaseModel, Field

PLACEHOLDER_ADDRESS = "YOUR_SERVER_IP"


class AddressResolution(BaseModel):
    """
    外网地址探测结果。全部方法失败时 address 为占位符，resolved 为 False。
    """
    address: str = PLACEHOLDER_ADDRESS
    source: str | None = None
    resolved: bool = False
    errors: list[str] = Field(default_factory=list)


class ConnectionReport(BaseModel):
    """安装完成后的连接说明。"""

    text: str
    path: Path | None = None
    address: AddressResolution
    incomplete: bool = Field(description="地址未能确定或存在降级步骤")
    warnings: list[str] = Field(default_factory=list)
