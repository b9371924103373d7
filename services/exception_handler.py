"""
全局异常处理器 / 崩溃上报 (Crash Reporter)

提供统一的异常捕捉、聚合和上报功能:
- 捕捉未处理的异步任务异常
- 异常聚合 (相同异常在聚合窗口内只上报一次)
- 可插拔的上报通道 (sink)，例如外部崩溃收集服务
- report() 供启动失败分类器 fire-and-forget 调用
"""
import asyncio
import logging
import traceback
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Any, List, Set

from core.helpers.metrics import CRASH_REPORTS_TOTAL

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExceptionAggregate:
    """异常聚合记录"""
    __slots__ = ('exception_hash', 'first_occurrence', 'last_occurrence', 'count', 'sample_traceback')

    def __init__(self, exception_hash: str, traceback_str: str):
        self.exception_hash = exception_hash
        self.first_occurrence = _utcnow()
        self.last_occurrence = self.first_occurrence
        self.count = 1
        self.sample_traceback = traceback_str

    def increment(self):
        self.last_occurrence = _utcnow()
        self.count += 1


class GlobalExceptionHandler:
    """
    全局异常处理器

    功能:
    1. 包装 asyncio.create_task 自动捕捉异常
    2. 异常聚合 (防止日志与上报风暴)
    3. 可配置的上报通道 (sink)
    4. report(): 非阻塞上报，上报失败只记录日志

    使用:
        handler = GlobalExceptionHandler()
        handler.add_sink(send_to_collector)
        handler.report(error, {"was_reload": True})
    """

    def __init__(self, aggregation_minutes: float = 10):
        self.aggregation_window = timedelta(minutes=aggregation_minutes)
        self._aggregates: Dict[str, ExceptionAggregate] = {}
        self._sinks: List[Callable] = []
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    def _compute_exception_hash(self, exc: BaseException) -> str:
        """计算异常的唯一标识 (基于类型和消息)"""
        exc_type = type(exc).__name__
        exc_msg = str(exc)[:200]
        content = f"{exc_type}:{exc_msg}"
        return hashlib.md5(content.encode()).hexdigest()[:16]

    async def handle_exception(
        self,
        exc: BaseException,
        context: Optional[Dict[str, Any]] = None,
        task_name: Optional[str] = None
    ) -> bool:
        """
        处理异常

        Returns:
            True 如果异常被上报 (非聚合), False 如果被聚合
        """
        exc_hash = self._compute_exception_hash(exc)
        tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        async with self._lock:
            self._cleanup_expired()
            agg = self._aggregates.get(exc_hash)
            if agg is not None and _utcnow() - agg.first_occurrence < self.aggregation_window:
                agg.increment()
                if agg.count == 5:
                    logger.warning(
                        f"Exception aggregated ({agg.count}x in {self.aggregation_window}): "
                        f"{type(exc).__name__}: {str(exc)[:100]}"
                    )
                CRASH_REPORTS_TOTAL.labels(status="aggregated").inc()
                return False
            self._aggregates[exc_hash] = ExceptionAggregate(exc_hash, tb_str)

        logger.error(
            f"Reported exception in {task_name or 'unknown task'}: {type(exc).__name__}: {exc}",
            exc_info=False
        )
        logger.debug(f"Traceback:\n{tb_str}")

        await self._invoke_sinks(exc, context, task_name)
        CRASH_REPORTS_TOTAL.labels(status="reported").inc()
        return True

    async def _invoke_sinks(
        self,
        exc: BaseException,
        context: Optional[Dict],
        task_name: Optional[str]
    ):
        for sink in self._sinks:
            try:
                if asyncio.iscoroutinefunction(sink):
                    await sink(exc, context, task_name)
                else:
                    sink(exc, context, task_name)
            except Exception as sink_err:
                CRASH_REPORTS_TOTAL.labels(status="sink_failed").inc()
                logger.error(f"Crash report sink error: {sink_err}")

    def add_sink(self, sink: Callable):
        """添加上报通道"""
        self._sinks.append(sink)

    def report(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Fire-and-forget 上报

        调用方不等待结果；上报中的任何失败都只写日志。
        """
        try:
            task = asyncio.get_running_loop().create_task(
                self.handle_exception(error, context, task_name="crash_report")
            )
        except RuntimeError:
            logger.warning(f"No running loop, crash report dropped: {type(error).__name__}: {error}")
            return
        self._pending.add(task)
        task.add_done_callback(self._on_report_done)

    def _on_report_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Crash report failed: {exc}")

    async def drain(self) -> None:
        """等待所有进行中的上报完成"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self) -> None:
        """取消仍在运行的任务"""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("GlobalExceptionHandler stopped")

    def create_task(
        self,
        coro,
        *,
        name: Optional[str] = None,
        context: Optional[Dict] = None
    ) -> asyncio.Task:
        """
        创建带异常捕捉的异步任务

        替代 asyncio.create_task()，自动捕捉并上报异常
        """
        async def wrapped():
            try:
                return await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self.handle_exception(e, context, name)
                raise

        task = asyncio.create_task(wrapped(), name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        # 异常已在 wrapped() 中上报，这里只取走结果避免 "never retrieved" 警告
        if not task.cancelled():
            task.exception()

    def _cleanup_expired(self) -> int:
        """清理过期的异常聚合记录 (调用方持有 _lock)"""
        now = _utcnow()
        expired_keys = [
            key for key, agg in self._aggregates.items()
            if now - agg.last_occurrence > self.aggregation_window * 2
        ]
        for key in expired_keys:
            del self._aggregates[key]
        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} expired exception aggregates")
        return len(expired_keys)
