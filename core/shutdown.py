"""
页面卸载清理协调器 (Teardown Coordinator)

在上下文 (标签页/进程) 即将关闭时执行尽力而为的清理：
1. 按优先级顺序执行清理任务
2. 单任务与总时长都有超时
3. 任一任务失败不影响后续任务
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)


CleanupCallback = Callable[[], Union[Awaitable[None], None]]


@dataclass
class CleanupTask:
    """清理任务定义"""
    callback: CleanupCallback
    priority: int  # 0-9, 0 最高优先级
    timeout: float  # 单个任务超时 (秒)
    name: str


class TeardownCoordinator:
    """
    卸载清理协调器

    使用示例:
        coordinator = TeardownCoordinator(total_timeout=5.0)
        coordinator.register_cleanup(single_instance.deregister_instance, priority=0, name="instance_claim")
        platform.on_before_unload(coordinator.trigger)
    """

    def __init__(self, total_timeout: float = 5.0, default_task_timeout: float = 2.0):
        self._tasks: List[CleanupTask] = []
        self._total_timeout = total_timeout
        self._default_task_timeout = default_task_timeout
        self._is_tearing_down = False
        self._lock = asyncio.Lock()
        self._start_time: Optional[float] = None

    def register_cleanup(
        self,
        callback: CleanupCallback,
        priority: int = 5,
        timeout: Optional[float] = None,
        name: Optional[str] = None
    ) -> Callable[[], None]:
        """
        注册清理回调 (同步或异步均可)

        Returns:
            注销句柄

        Raises:
            ValueError: 如果优先级不在 0-9 范围内
        """
        if not 0 <= priority <= 9:
            raise ValueError(f"Priority must be 0-9, got {priority}")

        task = CleanupTask(
            callback=callback,
            priority=priority,
            timeout=timeout if timeout is not None else self._default_task_timeout,
            name=name or getattr(callback, "__name__", "cleanup"),
        )
        self._tasks.append(task)
        logger.debug(f"注册卸载清理任务: {task.name} (优先级: {priority}, 超时: {task.timeout}s)")

        def _unregister() -> None:
            if task in self._tasks:
                self._tasks.remove(task)

        return _unregister

    def is_tearing_down(self) -> bool:
        return self._is_tearing_down

    async def trigger(self, source: Any = None) -> bool:
        """
        执行清理 (只会真正执行一次)

        Returns:
            bool: True 如果所有任务成功完成
        """
        async with self._lock:
            if self._is_tearing_down:
                logger.info("卸载清理已由其他事件触发，忽略此次重复调用。")
                return True
            self._is_tearing_down = True

        self._start_time = time.monotonic()
        logger.info(f"[TEARDOWN] 开始卸载清理 (来源: {source or 'unknown'}, 任务数: {len(self._tasks)})")

        sorted_tasks = sorted(self._tasks, key=lambda t: t.priority)
        failures = 0

        for index, task in enumerate(sorted_tasks):
            remaining = self._total_timeout - (time.monotonic() - self._start_time)
            if remaining <= 0:
                skipped = len(sorted_tasks) - index
                logger.warning(f"[TEARDOWN] 总超时 ({self._total_timeout}s)，跳过剩余 {skipped} 个任务")
                failures += skipped
                break

            effective_timeout = min(task.timeout, remaining)
            try:
                result = task.callback()
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    await asyncio.wait_for(result, timeout=effective_timeout)
                logger.debug(f"[TEARDOWN] ✓ {task.name}")
            except asyncio.TimeoutError:
                logger.error(f"[TEARDOWN] ✗ 清理超时: {task.name} ({effective_timeout:.1f}s)")
                failures += 1
            except Exception as e:
                logger.error(f"[TEARDOWN] ✗ 清理失败: {task.name}, 错误: {e}", exc_info=True)
                failures += 1

        logger.info(
            f"[TEARDOWN] 卸载清理完成 (失败: {failures}, "
            f"耗时: {time.monotonic() - self._start_time:.2f}s)"
        )
        return failures == 0
