"""
启动遥测服务 (App Init Telemetry)

记录启动流程各阶段的耗时 (相对启动时刻的毫秒数) 与分桶统计值，
在界面显示时一次性上报，同时写入 Prometheus 指标。
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from core.helpers.metrics import INIT_STAGE_SECONDS, INIT_STATISTICS

logger = logging.getLogger(__name__)


class AppInitTimingsStep(str, Enum):
    RECEIVED_ACCESS_TOKEN = "received_access_token"
    RECEIVED_SELF_USER = "received_self_user"
    VALIDATED_CLIENT = "validated_client"
    INITIALIZED_CRYPTOGRAPHY = "initialized_cryptography"
    RECEIVED_USER_DATA = "received_user_data"
    UPDATED_FROM_NOTIFICATIONS = "updated_from_notifications"
    APP_PRE_LOADED = "app_pre_loaded"
    APP_LOADED = "app_loaded"
    UPDATED_CONVERSATIONS = "updated_conversations"


class AppInitStatisticsValue(str, Enum):
    CLIENT_TYPE = "client_type"
    CONVERSATIONS = "conversations"
    CONNECTIONS = "connections"
    NOTIFICATIONS = "notifications"
    CLIENTS = "clients"


def bucket_value(value: int, bucket_size: Optional[int]) -> int:
    """把计数归入桶的下界 (例如 bucket_size=50 时 0..49 → 0, 50..99 → 50)"""
    if not bucket_size or value <= 0:
        return value
    return (value // bucket_size) * bucket_size


class AppInitTelemetry:
    """单次启动的遥测记录"""

    def __init__(self, sink: Optional[Callable[[Dict[str, Any]], Any]] = None):
        self._start = time.perf_counter()
        self._last = self._start
        self.timings: Dict[str, int] = {}
        self.statistics: Dict[str, Union[int, str]] = {}
        self.reports: List[Dict[str, Any]] = []
        self._sink = sink

    def time_step(self, step: AppInitTimingsStep) -> int:
        """记录阶段完成时刻，返回相对启动时刻的毫秒数 (同一步骤只记录第一次)"""
        now = time.perf_counter()
        key = AppInitTimingsStep(step).value
        if key not in self.timings:
            self.timings[key] = int((now - self._start) * 1000)
            INIT_STAGE_SECONDS.labels(stage=key).observe(now - self._last)
            self._last = now
        return self.timings[key]

    def add_statistic(
        self,
        statistic: AppInitStatisticsValue,
        value: Union[int, str],
        bucket_size: Optional[int] = None,
    ) -> None:
        key = AppInitStatisticsValue(statistic).value
        if isinstance(value, int):
            value = bucket_value(value, bucket_size)
            INIT_STATISTICS.labels(name=key).set(value)
        self.statistics[key] = value

    def get_timings(self) -> Dict[str, int]:
        return dict(self.timings)

    def get_statistics(self) -> Dict[str, Union[int, str]]:
        return dict(self.statistics)

    def report(self) -> Dict[str, Any]:
        """汇总并上报；sink 失败只记录日志"""
        payload = {
            "timings": self.get_timings(),
            "statistics": self.get_statistics(),
        }
        self.reports.append(payload)
        logger.info(f"App init telemetry: {payload}")
        if self._sink is not None:
            try:
                self._sink(payload)
            except Exception as e:
                logger.warning(f"Telemetry sink failed: {e}")
        return payload
