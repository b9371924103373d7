"""
生命周期控制器 (Lifecycle Controller)

负责登出、刷新、更新提示与跳转登录页，以及执行启动失败后的恢复动作。
状态: READY → LOGGING_OUT → REDIRECTING (刷新/重载时为 RELOADING)
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set

from core.constants import (
    LOGIN_ANCHOR,
    PROPERTY_ENABLE_DEBUGGING,
    URL_PARAMETER_REASON,
    ConnectivityTrigger,
    StorageKey,
    StreamChangeTrigger,
    UpdateSource,
)
from core.event_bus import (
    LIFECYCLE_REFRESH,
    LIFECYCLE_RESTART_REQUESTED,
    LIFECYCLE_SIGN_OUT,
    LIFECYCLE_SIGNED_OUT,
    LIFECYCLE_UPDATE,
    WARNING_SHOW,
    EventBus,
    WarningType,
)
from core.helpers.metrics import SIGN_OUT_TOTAL
from core.ports import (
    AuthPort,
    ClientPort,
    ConnectivityPort,
    Platform,
    PropertiesPort,
    StoragePort,
    StreamPort,
    Unsubscribe,
    UserPort,
)
from core.sign_out import SignOutPolicy, SignOutReason
from models.recovery import (
    ForceLogout,
    RecoveryAction,
    RedirectToLogin,
    ReloadAfterConnectivity,
    WaitForConnectivityThenReload,
    WaitForConnectivityThenRetryInit,
)
from repositories.cache_repo import CacheRepository

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    READY = "ready"
    LOGGING_OUT = "logging_out"
    REDIRECTING = "redirecting"
    RELOADING = "reloading"


def append_parameter(url: str, parameter: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{parameter}"


class LifecycleController:
    """登出 / 刷新 / 更新 / 跳转登录"""

    # enable_debugging 时调整级别的应用 logger
    APP_LOGGER_NAMES = ("core", "services", "repositories", "models")

    def __init__(
        self,
        *,
        platform: Platform,
        bus: EventBus,
        connectivity: ConnectivityPort,
        auth: AuthPort,
        stream: StreamPort,
        users: UserPort,
        clients: ClientPort,
        storage: StoragePort,
        cache: CacheRepository,
        properties: Optional[PropertiesPort] = None,
        login_route: str = "/auth/",
        website_url: str = "https://wire.com/",
        desktop: Optional[bool] = None,
        default_log_level: int = logging.INFO,
    ) -> None:
        self.platform = platform
        self.bus = bus
        self.connectivity = connectivity
        self.auth = auth
        self.stream = stream
        self.users = users
        self.clients = clients
        self.storage = storage
        self.cache = cache
        self.properties = properties
        self.login_route = login_route
        self.website_url = website_url
        self._desktop = desktop
        self._default_log_level = default_log_level
        self.state = LifecycleState.READY
        self._pending_logout: Optional[Unsubscribe] = None
        self._subscriptions: List[Unsubscribe] = []

    @property
    def is_desktop(self) -> bool:
        return self._desktop if self._desktop is not None else self.platform.is_desktop()

    # === 事件总线 ===

    def subscribe_to_events(self) -> None:
        """其他模块可通过总线触发刷新/登出/更新，无需持有控制器引用"""
        if self._subscriptions:
            return
        self._subscriptions = [
            self.bus.subscribe(LIFECYCLE_REFRESH, self._on_refresh),
            self.bus.subscribe(LIFECYCLE_SIGN_OUT, self._on_sign_out),
            self.bus.subscribe(LIFECYCLE_UPDATE, self._on_update),
        ]

    def unsubscribe_from_events(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    async def _on_refresh(self, _data: Any = None) -> None:
        await self.refresh()

    async def _on_sign_out(self, data: Any = None) -> None:
        # 负载可以是原因本身，也可以是 {"reason": ..., "clear_data": ...}
        if isinstance(data, dict):
            await self.logout(SignOutReason(data["reason"]), bool(data.get("clear_data", False)))
        else:
            await self.logout(SignOutReason(data or SignOutReason.USER_REQUESTED))

    async def _on_update(self, _data: Any = None) -> None:
        await self.update()

    # === 登出 ===

    async def logout(self, reason: SignOutReason, clear_data: bool = False) -> None:
        """
        登出并清理本地数据

        IMMEDIATE 原因直接做本地清理，不看网络状态；其余原因在线时先通知后端
        (失败只记录日志)，离线时等待 online 信号再继续。
        """
        reason = SignOutReason(reason)
        if self.state in (LifecycleState.LOGGING_OUT, LifecycleState.REDIRECTING):
            logger.info(f"Logout ({reason.value}) ignored, already {self.state.value}")
            return
        SIGN_OUT_TOTAL.labels(reason=reason.value).inc()

        if SignOutPolicy.is_immediate(reason):
            await self._local_logout(reason, clear_data)
            return

        if self.platform.is_online():
            await self._logout_on_backend(reason, clear_data)
            return

        if self._pending_logout is not None:
            return
        logger.warning("No internet access. Continuing logout when internet connectivity regained.")

        async def _on_online() -> None:
            self._cancel_pending_logout()
            await self._logout_on_backend(reason, clear_data)

        self._pending_logout = self.platform.on_online(_on_online)

    def _cancel_pending_logout(self) -> None:
        if self._pending_logout is not None:
            self._pending_logout()
            self._pending_logout = None

    async def _logout_on_backend(self, reason: SignOutReason, clear_data: bool) -> None:
        logger.info(f"Logout triggered by '{reason.value}': Disconnecting user from the backend.")
        try:
            await self.auth.logout()
        except Exception as e:
            logger.warning(f"Backend logout failed, continuing with local cleanup: {e}")
        await self._local_logout(reason, clear_data)

    def compute_retained_keys(self, stored_keys: List[str], clear_data: bool) -> Set[str]:
        """登出时保留的本地键"""
        keep = {StorageKey.SHOW_LOGIN}
        if self.clients.is_current_client_permanent() and not clear_data:
            keep.add(StorageKey.PERSIST)

        own_label_key = None
        self_user = self.users.self_user()
        if self_user is not None:
            own_label_key = self.clients.construct_cookie_label_key(self_user.email or self_user.phone or "")

        for key in stored_keys:
            if StorageKey.COOKIE_LABEL not in key:
                continue
            if clear_data and key == own_label_key:
                continue
            keep.add(key)
        return keep

    async def _local_logout(self, reason: SignOutReason, clear_data: bool) -> None:
        # 每一步都尽力而为：任何一步失败都不能阻止最终跳转
        self.state = LifecycleState.LOGGING_OUT
        await self._cleanup_step("stream_disconnect", self.stream.disconnect, StreamChangeTrigger.LOGOUT)
        await self._cleanup_step("clear_cache", self._clear_local_data, reason, clear_data)
        if clear_data:
            await self._cleanup_step("delete_database", self.storage.delete_database)
        await self._cleanup_step("signed_out_event", self.bus.publish, LIFECYCLE_SIGNED_OUT, {"clear_data": clear_data})
        await self.redirect_to_login(reason)

    async def _clear_local_data(self, reason: SignOutReason, clear_data: bool) -> None:
        keys_to_keep = self.compute_retained_keys(await self.cache.keys(), clear_data)
        keep_conversation_input = reason == SignOutReason.SESSION_EXPIRED
        await self.cache.clear_cache(keep_conversation_input, keys_to_keep)

    async def _cleanup_step(self, step: str, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        try:
            await func(*args)
        except Exception as e:
            logger.error(f"Logout cleanup step '{step}' failed, continuing: {e}", exc_info=True)

    # === 刷新 / 更新 ===

    async def refresh(self) -> None:
        logger.info("Refresh to update started")
        if self.is_desktop:
            # 桌面壳自行决定何时重启
            await self.bus.publish(LIFECYCLE_RESTART_REQUESTED, UpdateSource.WEBAPP)
            return
        self.state = LifecycleState.RELOADING
        self.platform.reload(force=True)

    async def update(self) -> None:
        await self.bus.publish(WARNING_SHOW, WarningType.LIFECYCLE_UPDATE)

    # === 跳转登录 ===

    def build_login_url(self, reason: SignOutReason) -> str:
        reason = SignOutReason(reason)
        if SignOutPolicy.is_temporary_guest(reason) and self.users.is_temporary_guest():
            return self.website_url

        url = f"{self.login_route}{self.platform.query_string()}"
        if SignOutPolicy.is_immediate(reason):
            url = append_parameter(url, f"{URL_PARAMETER_REASON}={reason.value}")
        if reason != SignOutReason.NOT_SIGNED_IN:
            url = f"{url}{LOGIN_ANCHOR}"
        return url

    async def redirect_to_login(self, reason: SignOutReason) -> str:
        """确认连通后跳转 (替换当前地址)"""
        reason = SignOutReason(reason)
        logger.info(f"Redirecting to login after connectivity verification. Reason: {reason.value}")
        self.state = LifecycleState.REDIRECTING
        try:
            await self.connectivity.run_when_online(ConnectivityTrigger.LOGIN_REDIRECT)
        except Exception:
            # 允许之后的登出/跳转重新尝试
            self.state = LifecycleState.READY
            raise
        url = self.build_login_url(reason)
        self.platform.navigate(url)
        return url

    # === 恢复动作 ===

    async def execute(self, action: RecoveryAction) -> None:
        if isinstance(action, RedirectToLogin):
            await self.redirect_to_login(action.reason)
        elif isinstance(action, ForceLogout):
            await self.logout(action.reason)
        elif isinstance(action, ReloadAfterConnectivity):
            await self._reload_when_online(action.trigger)
        elif isinstance(action, WaitForConnectivityThenReload):
            await self._reload_when_online(ConnectivityTrigger.APP_INIT_RELOAD)
        elif isinstance(action, WaitForConnectivityThenRetryInit):
            logger.info("Waiting for connectivity before re-evaluating app init failure")
        else:
            raise TypeError(f"Unknown recovery action: {action!r}")

    async def _reload_when_online(self, trigger: ConnectivityTrigger) -> None:
        logger.warning(f"Connectivity issues. Trigger reload on regained connectivity ({trigger.value}).")
        self.state = LifecycleState.RELOADING
        await self.connectivity.run_when_online(trigger)
        self.platform.reload(force=False)

    # === 调试开关 ===

    async def enable_debugging(self) -> None:
        self._set_app_log_level(logging.DEBUG)
        await self._save_debug_preference(True)

    async def disable_debugging(self) -> None:
        self._set_app_log_level(self._default_log_level)
        await self._save_debug_preference(False)

    def _set_app_log_level(self, level: int) -> None:
        for name in self.APP_LOGGER_NAMES:
            logging.getLogger(name).setLevel(level)
        logger.info(f"App log level set to {logging.getLevelName(level)}")

    async def _save_debug_preference(self, enabled: bool) -> None:
        if self.properties is not None:
            await self.properties.save_preference(PROPERTY_ENABLE_DEBUGGING, enabled)
