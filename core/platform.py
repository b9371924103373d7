import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from core.ports import Unsubscribe

logger = logging.getLogger(__name__)


def is_same_location(referrer: str, location: str) -> bool:
    """忽略锚点比较两个地址 (referrer 与当前地址一致即为页面刷新)"""
    if not referrer or not location:
        return False
    ref = urlsplit(referrer)
    loc = urlsplit(location)
    return urlunsplit(ref._replace(fragment="")) == urlunsplit(loc._replace(fragment=""))


class PlatformSignals:
    """
    宿主环境信号源

    把 window 的 online/offline/beforeunload/unload 事件和页面导航抽象成可注入的能力。
    宿主 (桌面壳桥接、测试) 通过 set_online()/fire_before_unload()/fire_unload() 驱动信号。
    """

    def __init__(
        self,
        location: str = "https://app.wire.com/",
        referrer: str = "",
        online: bool = True,
        desktop: bool = False,
    ) -> None:
        self._location = location
        self._referrer = referrer
        self._online = online
        self._desktop = desktop
        self._callbacks: Dict[str, List[Callable[[], Any]]] = {
            "online": [],
            "offline": [],
            "beforeunload": [],
            "unload": [],
        }
        self.navigations: List[str] = []
        self.reloads: List[bool] = []

    # === 信号订阅 ===

    def _subscribe(self, event: str, callback: Callable[[], Any]) -> Unsubscribe:
        self._callbacks[event].append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks[event]:
                self._callbacks[event].remove(callback)

        return _unsubscribe

    def on_online(self, callback: Callable[[], Any]) -> Unsubscribe:
        return self._subscribe("online", callback)

    def on_offline(self, callback: Callable[[], Any]) -> Unsubscribe:
        return self._subscribe("offline", callback)

    def on_before_unload(self, callback: Callable[[], Any]) -> Unsubscribe:
        return self._subscribe("beforeunload", callback)

    def on_unload(self, callback: Callable[[], Any]) -> Unsubscribe:
        return self._subscribe("unload", callback)

    async def _fire(self, event: str) -> None:
        for callback in list(self._callbacks[event]):
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} callback: {e}", exc_info=True)

    # === 宿主驱动 ===

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info(f"Platform connectivity changed: {'online' if online else 'offline'}")
        await self._fire("online" if online else "offline")

    async def fire_before_unload(self) -> None:
        await self._fire("beforeunload")

    async def fire_unload(self) -> None:
        await self._fire("unload")

    # === 状态查询与导航 ===

    def is_online(self) -> bool:
        return self._online

    def is_desktop(self) -> bool:
        return self._desktop

    def is_localhost(self) -> bool:
        return (urlsplit(self._location).hostname or "") in {"localhost", "127.0.0.1"}

    def is_reload(self) -> bool:
        is_reload = is_same_location(self._referrer, self._location)
        logger.debug(f"App reload: '{is_reload}', Referrer: '{self._referrer}', Location: '{self._location}'")
        return is_reload

    def referrer(self) -> str:
        return self._referrer

    def location(self) -> str:
        return self._location

    def query_string(self) -> str:
        query = urlsplit(self._location).query
        return f"?{query}" if query else ""

    def navigate(self, url: str) -> None:
        """替换当前地址 (location.replace 语义，不留历史记录)"""
        logger.info(f"Navigating to {url}")
        self.navigations.append(url)

    def reload(self, force: bool = False) -> None:
        logger.info(f"Reloading page (force={force})")
        self.reloads.append(force)

    @property
    def last_navigation(self) -> Optional[str]:
        return self.navigations[-1] if self.navigations else None
