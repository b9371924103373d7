import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProgressReport(BaseModel):
    """加载进度 (交给视图层，不持久化)"""
    model_config = ConfigDict(frozen=True)

    percent: float = Field(ge=0, le=100)
    message: Optional[str] = None


class InstanceClaim(BaseModel):
    """单实例声明：谁是当前会话的权威上下文"""
    model_config = ConfigDict(frozen=True)

    instance_id: str = Field(min_length=1)
    claimed_at: int = Field(default_factory=time.time_ns, description="纳秒时间戳")

    def is_newer_than(self, other: Optional["InstanceClaim"]) -> bool:
        """最后写入者胜出；时间戳相同时按 instance_id 决胜，保证结果确定"""
        if other is None:
            return True
        return (self.claimed_at, self.instance_id) >= (other.claimed_at, other.instance_id)
