"""
登出原因与分类策略

每个原因恰好属于三类之一：
- IMMEDIATE: 跳过后端登出请求，直接本地清理
- TEMPORARY_GUEST: 临时访客可走"离开访客房间"路径
- BACKEND: 其余原因，清理前先通知后端
"""
from enum import Enum
from typing import Dict, FrozenSet


class SignOutReason(str, Enum):
    ACCOUNT_DELETED = "deleted"
    CLIENT_REMOVED = "client_removed"
    SESSION_EXPIRED = "expired"
    MULTIPLE_TABS = "multiple_tabs"
    USER_REQUESTED = "user_requested"
    APP_INIT = "app_init"
    NOT_SIGNED_IN = "not_signed_in"
    INDEXED_DB = "indexed_db"


class SignOutClass(str, Enum):
    IMMEDIATE = "immediate"
    TEMPORARY_GUEST = "temporary_guest"
    BACKEND = "backend"


IMMEDIATE_REASONS: FrozenSet[SignOutReason] = frozenset({
    SignOutReason.ACCOUNT_DELETED,
    SignOutReason.CLIENT_REMOVED,
    SignOutReason.SESSION_EXPIRED,
    SignOutReason.MULTIPLE_TABS,
})

TEMPORARY_GUEST_REASONS: FrozenSet[SignOutReason] = frozenset({
    SignOutReason.USER_REQUESTED,
})


class SignOutPolicy:
    """登出原因分类表 (纯函数)"""

    _TABLE: Dict[SignOutReason, SignOutClass] = {
        reason: (
            SignOutClass.IMMEDIATE if reason in IMMEDIATE_REASONS
            else SignOutClass.TEMPORARY_GUEST if reason in TEMPORARY_GUEST_REASONS
            else SignOutClass.BACKEND
        )
        for reason in SignOutReason
    }

    @classmethod
    def classify(cls, reason: SignOutReason) -> SignOutClass:
        return cls._TABLE[SignOutReason(reason)]

    @classmethod
    def is_immediate(cls, reason: SignOutReason) -> bool:
        return cls.classify(reason) is SignOutClass.IMMEDIATE

    @classmethod
    def is_temporary_guest(cls, reason: SignOutReason) -> bool:
        return cls.classify(reason) is SignOutClass.TEMPORARY_GUEST

    @classmethod
    def requires_backend_logout(cls, reason: SignOutReason) -> bool:
        return cls.classify(reason) is not SignOutClass.IMMEDIATE
