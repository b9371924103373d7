"""
启动失败分类器 (Failure Classifier)

classify(error, was_reload, online) 是纯函数，按顺序匹配 (第一个命中者胜出)：
1. 多标签页冲突 / 本地存储不可用 → 跳转登录 (MULTIPLE_TABS / INDEXED_DB)
2. 页面刷新 + 凭据失效或缺失 → 跳转登录 (SESSION_EXPIRED)
3. 页面刷新 + 瞬态凭据失败或无有效设备 → 等待连通后整页重新加载
4. 离线 → 等待 online 信号后重新评估
5. 在线 + 无缓存凭据 / 重试耗尽 / 被拒绝 → 跳转登录 (NOT_SIGNED_IN)
6. 其余 → 强制登出 (APP_INIT)

FailureClassifier 负责日志与崩溃上报，FailureHandler 负责交给 LifecycleController 执行。
"""
import logging
from enum import Enum
from typing import Optional, Tuple, TYPE_CHECKING

from core.constants import ConnectivityTrigger
from core.exceptions import (
    AccessTokenError,
    AccessTokenErrorType,
    AuthError,
    AuthErrorType,
    ClientError,
    ClientErrorType,
    StorageUnavailableError,
)
from core.helpers.metrics import RECOVERY_ACTIONS_TOTAL
from core.ports import CrashReporterPort, Platform, Unsubscribe
from core.sign_out import SignOutReason
from models.recovery import (
    ForceLogout,
    RecoveryAction,
    RedirectToLogin,
    ReloadAfterConnectivity,
    WaitForConnectivityThenRetryInit,
)

if TYPE_CHECKING:
    from core.lifecycle import LifecycleController
    from core.single_instance import SingleInstanceCoordinator

logger = logging.getLogger(__name__)


class FailureRule(str, Enum):
    PRECONDITION = "precondition"
    SESSION_EXPIRED_ON_RELOAD = "session_expired_on_reload"
    TRANSIENT_ON_RELOAD = "transient_on_reload"
    OFFLINE = "offline"
    NOT_SIGNED_IN = "not_signed_in"
    UNCLASSIFIED = "unclassified"


# 这些分支额外上报给崩溃收集
REPORTED_RULES = frozenset({
    FailureRule.SESSION_EXPIRED_ON_RELOAD,
    FailureRule.TRANSIENT_ON_RELOAD,
    FailureRule.UNCLASSIFIED,
})

SESSION_EXPIRED_TOKEN_TYPES = frozenset({
    AccessTokenErrorType.REQUEST_FORBIDDEN,
    AccessTokenErrorType.NOT_FOUND_IN_CACHE,
})

NOT_SIGNED_IN_TOKEN_TYPES = frozenset({
    AccessTokenErrorType.NOT_FOUND_IN_CACHE,
    AccessTokenErrorType.RETRIES_EXCEEDED,
    AccessTokenErrorType.REQUEST_FORBIDDEN,
})


def evaluate(error: BaseException, was_reload: bool, online: bool) -> Tuple[FailureRule, RecoveryAction]:
    """返回命中的规则与恢复动作"""
    if isinstance(error, AuthError):
        if error.type == AuthErrorType.MULTIPLE_TABS:
            return FailureRule.PRECONDITION, RedirectToLogin(reason=SignOutReason.MULTIPLE_TABS)
        return FailureRule.PRECONDITION, RedirectToLogin(reason=SignOutReason.INDEXED_DB)
    if isinstance(error, StorageUnavailableError):
        return FailureRule.PRECONDITION, RedirectToLogin(reason=SignOutReason.INDEXED_DB)

    is_token_error = isinstance(error, AccessTokenError)

    if was_reload:
        if is_token_error and error.type in SESSION_EXPIRED_TOKEN_TYPES:
            return FailureRule.SESSION_EXPIRED_ON_RELOAD, RedirectToLogin(reason=SignOutReason.SESSION_EXPIRED)

        is_invalid_client = isinstance(error, ClientError) and error.type == ClientErrorType.NO_VALID_CLIENT
        if is_token_error or is_invalid_client:
            trigger = (
                ConnectivityTrigger.ACCESS_TOKEN_RETRIEVAL if is_token_error
                else ConnectivityTrigger.APP_INIT_RELOAD
            )
            return FailureRule.TRANSIENT_ON_RELOAD, ReloadAfterConnectivity(trigger=trigger)

    if not online:
        return FailureRule.OFFLINE, WaitForConnectivityThenRetryInit()

    if is_token_error and error.type in NOT_SIGNED_IN_TOKEN_TYPES:
        return FailureRule.NOT_SIGNED_IN, RedirectToLogin(reason=SignOutReason.NOT_SIGNED_IN)

    return FailureRule.UNCLASSIFIED, ForceLogout(reason=SignOutReason.APP_INIT)


def classify(error: BaseException, was_reload: bool, online: bool) -> RecoveryAction:
    return evaluate(error, was_reload, online)[1]


class FailureClassifier:
    """带日志与崩溃上报的分类器；在线状态取自平台快照"""

    def __init__(self, platform: Platform, crash_reporter: Optional[CrashReporterPort] = None):
        self.platform = platform
        self.crash_reporter = crash_reporter

    def classify(self, error: BaseException, was_reload: bool) -> RecoveryAction:
        online = self.platform.is_online()
        rule, action = evaluate(error, was_reload, online)

        log = logger.error if rule in (FailureRule.SESSION_EXPIRED_ON_RELOAD, FailureRule.UNCLASSIFIED) else logger.warning
        log(
            f"App init failure [{rule.value}] -> {action.kind}: {type(error).__name__}: {error} "
            f"(reload={was_reload}, online={online})"
        )

        reason = getattr(action, "reason", None)
        RECOVERY_ACTIONS_TOTAL.labels(
            action=action.kind,
            reason=reason.value if reason is not None else "-",
        ).inc()

        if rule in REPORTED_RULES:
            self._report(error, {"rule": rule.value, "was_reload": was_reload, "online": online})
        return action

    def _report(self, error: BaseException, context: dict) -> None:
        if self.crash_reporter is None:
            return
        try:
            self.crash_reporter.report(error, context)
        except Exception as e:
            logger.warning(f"Crash report failed (ignored): {e}")


class FailureHandler:
    """
    分类并执行恢复动作

    WaitForConnectivityThenRetryInit: 订阅一次 online 信号，信号到达时用新的在线快照重新评估同一个错误；
    等待期间本实例已被取代时，改为按 MULTIPLE_TABS 评估。
    """

    def __init__(
        self,
        classifier: FailureClassifier,
        lifecycle: "LifecycleController",
        platform: Platform,
        coordinator: Optional["SingleInstanceCoordinator"] = None,
    ):
        self.classifier = classifier
        self.lifecycle = lifecycle
        self.platform = platform
        self.coordinator = coordinator
        self._pending_retry: Optional[Unsubscribe] = None

    @property
    def waiting_for_connectivity(self) -> bool:
        return self._pending_retry is not None

    async def handle(self, error: BaseException, was_reload: bool) -> RecoveryAction:
        action = self.classifier.classify(error, was_reload)
        if isinstance(action, WaitForConnectivityThenRetryInit):
            self._wait_for_online(error, was_reload)
            return action
        await self.lifecycle.execute(action)
        return action

    def _wait_for_online(self, error: BaseException, was_reload: bool) -> None:
        if self._pending_retry is not None:
            return
        logger.warning("No connectivity. Re-evaluating init failure on regained connectivity.")

        async def _on_online() -> None:
            self.cancel()
            await self.handle(self._current_error(error), was_reload)

        self._pending_retry = self.platform.on_online(_on_online)

    def _current_error(self, error: BaseException) -> BaseException:
        if self.coordinator is not None and self.coordinator.superseded:
            return AuthError(AuthErrorType.MULTIPLE_TABS, "Instance claim superseded while waiting for connectivity")
        return error

    def cancel(self) -> None:
        if self._pending_retry is not None:
            self._pending_retry()
            self._pending_retry = None
