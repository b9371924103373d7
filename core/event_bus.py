import asyncio
import logging
from collections import defaultdict
from typing import Callable, Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


# 生命周期信号
LIFECYCLE_LOADED = "lifecycle.loaded"
LIFECYCLE_RESTART_REQUESTED = "lifecycle.restart-requested"
LIFECYCLE_SIGNED_OUT = "lifecycle.signed-out"
LIFECYCLE_REFRESH = "lifecycle.refresh"
LIFECYCLE_SIGN_OUT = "lifecycle.sign-out"
LIFECYCLE_UPDATE = "lifecycle.update"

# 界面提示
WARNING_SHOW = "warning.show"
WARNING_DISMISS = "warning.dismiss"

# 连通性信号
CONNECTIVITY_ONLINE = "connectivity.online"
CONNECTIVITY_OFFLINE = "connectivity.offline"


class WarningType:
    NO_INTERNET = "no-internet"
    CONNECTIVITY_RECONNECT = "connectivity-reconnect"
    LIFECYCLE_UPDATE = "lifecycle-update"


class EventBus:
    """
    进程内事件总线

    功能:
    1. 事件订阅/发布 (subscribe 返回取消订阅句柄)
    2. 处理器异常隔离，并交给错误钩子 (崩溃上报)
    3. drain() 等待 fire-and-forget 处理器完成
    """

    # 需要记录日志的事件前缀
    LOG_EVENT_PREFIXES = ("lifecycle.", "connectivity.", "warning.")

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._error_hook: Optional[Callable[[Exception, Dict[str, Any]], Any]] = None
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: Callable) -> Callable[[], None]:
        """
        订阅事件

        Args:
            event_type: 事件类型
            handler: 处理函数 (同步或异步)

        Returns:
            取消订阅的句柄，可重复调用
        """
        self._listeners[event_type].append(handler)
        logger.debug(f"Event listener registered: {event_type} -> {getattr(handler, '__name__', handler)}")
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        """取消订阅"""
        if handler in self._listeners.get(event_type, []):
            self._listeners[event_type].remove(handler)

    async def publish(self, event_type: str, data: Any = None, wait: bool = False) -> None:
        """
        发布事件

        Args:
            event_type: 事件类型
            data: 事件数据
            wait: 是否等待所有处理器完成 (异常会直接抛给调用方)
        """
        if event_type.startswith(self.LOG_EVENT_PREFIXES):
            logger.debug(f"📢 Event: {event_type} data={data!r}")

        handlers = list(self._listeners.get(event_type, []))
        if not handlers:
            return

        if wait:
            for handler in handlers:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
        else:
            for handler in handlers:
                self._spawn(self._safe_execute(handler, event_type, data))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """等待所有 fire-and-forget 处理器执行完毕"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _safe_execute(self, handler: Callable, event_type: str, data: Any) -> None:
        """安全执行处理器"""
        try:
            if asyncio.iscoroutinefunction(handler):
                await handler(data)
            else:
                handler(data)
        except Exception as e:
            name = getattr(handler, "__name__", repr(handler))
            logger.error(f"Event handler error [{name}] for {event_type}: {e}")
            if self._error_hook is not None:
                try:
                    result = self._error_hook(e, {"event_type": event_type, "handler": name})
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as hook_err:
                    logger.debug(f"Event error hook failed: {hook_err}")

    def set_error_hook(self, hook: Optional[Callable[[Exception, Dict[str, Any]], Any]]) -> None:
        """处理器异常时的回调 (通常接入崩溃上报)"""
        self._error_hook = hook
