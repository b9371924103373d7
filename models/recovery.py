from typing import Literal, Union

from pydantic import BaseModel, ConfigDict

from core.constants import ConnectivityTrigger
from core.sign_out import SignOutReason


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True)


class RedirectToLogin(_Action):
    kind: Literal["redirect_to_login"] = "redirect_to_login"
    reason: SignOutReason


class ReloadAfterConnectivity(_Action):
    """等待连通性确认后整页重新加载 (内存中的流水线状态不可信，不原地恢复)"""
    kind: Literal["reload_after_connectivity"] = "reload_after_connectivity"
    trigger: ConnectivityTrigger


class WaitForConnectivityThenReload(_Action):
    kind: Literal["wait_then_reload"] = "wait_then_reload"


class ForceLogout(_Action):
    kind: Literal["force_logout"] = "force_logout"
    reason: SignOutReason


class WaitForConnectivityThenRetryInit(_Action):
    """离线：等待 online 信号后重新评估同一个错误"""
    kind: Literal["wait_then_retry_init"] = "wait_then_retry_init"


RecoveryAction = Union[
    RedirectToLogin,
    ReloadAfterConnectivity,
    WaitForConnectivityThenReload,
    ForceLogout,
    WaitForConnectivityThenRetryInit,
]
