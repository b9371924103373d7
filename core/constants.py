from enum import Enum


class ConnectivityTrigger(str, Enum):
    """连通性检查的触发来源 (仅用于日志与统计)"""
    ACCESS_TOKEN_RETRIEVAL = "access_token_retrieval"
    APP_INIT_RELOAD = "app_init_reload"
    CONNECTION_REGAINED = "connection_regained"
    LOGIN_REDIRECT = "login_redirect"
    LOGOUT = "logout"


class StreamChangeTrigger(str, Enum):
    """实时推送连接变化的原因"""
    LOGOUT = "logout"
    OFFLINE = "offline"
    ONLINE = "online"
    PAGE_NAVIGATION = "page_navigation"


class InitialScreen(str, Enum):
    """界面显示时的首屏，按优先级排列"""
    TEMPORARY_GUEST = "temporary_guest"
    TAKEOVER = "takeover"
    CONVERSATION = "conversation"
    CONNECTION_REQUESTS = "connection_requests"
    NONE = "none"


class StorageKey:
    """本地存储 (localStorage 等价物) 中与登录相关的键"""
    SHOW_LOGIN = "z.storage.StorageKey.AUTH.SHOW_LOGIN"
    PERSIST = "z.storage.StorageKey.AUTH.PERSIST"
    COOKIE_LABEL = "z.storage.StorageKey.AUTH.COOKIE_LABEL"
    CONVERSATION_INPUT = "z.storage.StorageKey.CONVERSATION.input"


class UpdateSource:
    WEBAPP = "webapp"
    DESKTOP = "desktop"


# 进度检查点：视图依赖这些固定值，顺序不能变
PROGRESS_ACCESS_TOKEN = 2.5
PROGRESS_SELF_USER = 5
PROGRESS_CLIENT = 7.5
PROGRESS_CRYPTOGRAPHY = 10
PROGRESS_USER_DATA = 25
PROGRESS_NOTIFICATIONS = 97.5
PROGRESS_CLIENTS = 99
PROGRESS_DONE = 100

PROGRESS_CHECKPOINTS = (
    PROGRESS_ACCESS_TOKEN,
    PROGRESS_SELF_USER,
    PROGRESS_CLIENT,
    PROGRESS_CRYPTOGRAPHY,
    PROGRESS_USER_DATA,
    PROGRESS_NOTIFICATIONS,
    PROGRESS_CLIENTS,
    PROGRESS_DONE,
)

# 加载提示文案
MSG_RECEIVED_SELF_USER = "Loading your account"
MSG_VALIDATED_CLIENT = "Validating your device"
MSG_RECEIVED_USER_DATA = "Loading conversations and contacts"
MSG_UPDATED_FROM_NOTIFICATIONS = "Loading messages"

# 认为是"从登录页跳转而来"的 referrer 片段
LOGIN_REFERRER_MARKERS = ("/auth", "/login")

# 登录页 URL 上的登出原因参数与锚点
URL_PARAMETER_REASON = "reason"
LOGIN_ANCHOR = "#login"

PROPERTY_ENABLE_DEBUGGING = "enable_debugging"
