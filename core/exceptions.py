from enum import Enum


class AppError(Exception):
    """系统基础异常类"""
    def __init__(self, message: str, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class StorageUnavailableError(AppError):
    """
    本地持久化存储不可用
    场景：IndexedDB/SQLite 被禁用、磁盘只读、隐私模式
    """
    pass


class AuthErrorType(str, Enum):
    MULTIPLE_TABS = "multiple_tabs"
    INDEXED_DB = "indexed_db"


class AuthError(AppError):
    """启动前置条件失败 (多标签页冲突 / 存储不可用)"""
    def __init__(self, type: AuthErrorType, message: str | None = None, context: dict | None = None) -> None:
        super().__init__(message or f"Auth precondition failed: {type.value}", context)
        self.type = type


class AccessTokenErrorType(str, Enum):
    NOT_FOUND_IN_CACHE = "not_found_in_cache"
    REQUEST_FORBIDDEN = "request_forbidden"
    RETRIES_EXCEEDED = "retries_exceeded"
    REQUEST_FAILED = "request_failed"


class AccessTokenError(AppError):
    """
    访问令牌获取失败
    REQUEST_FORBIDDEN / NOT_FOUND_IN_CACHE 视为凭据失效，其余视为瞬态失败
    """
    def __init__(self, type: AccessTokenErrorType, message: str | None = None, context: dict | None = None) -> None:
        super().__init__(message or f"Access token error: {type.value}", context)
        self.type = type


class ClientErrorType(str, Enum):
    NO_VALID_CLIENT = "no_valid_client"
    CLIENT_NOT_SET = "client_not_set"


class ClientError(AppError):
    """本地设备 (client) 校验失败"""
    def __init__(self, type: ClientErrorType, message: str | None = None, context: dict | None = None) -> None:
        super().__init__(message or f"Client error: {type.value}", context)
        self.type = type


class InvalidTransitionError(AppError):
    """初始化状态机出现非法跳转"""
    pass
