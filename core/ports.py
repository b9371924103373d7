"""
外部协作者端口 (Ports)

编排器、生命周期控制器只依赖这些接口；具体实现 (仓库、服务、视图) 在构造时注入。
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Protocol, Sequence

from core.constants import ConnectivityTrigger, InitialScreen, StreamChangeTrigger


Unsubscribe = Callable[[], None]


class UserIdentity(Protocol):
    """自身用户快照"""
    id: str
    email: Optional[str]
    phone: Optional[str]

    def has_activated_identity(self) -> bool: ...
    def is_temporary_guest(self) -> bool: ...
    def has_picture(self) -> bool: ...
    def has_username(self) -> bool: ...


class LocalClient(Protocol):
    id: str
    type: str


class StoragePort(Protocol):
    async def check_available(self) -> None: ...
    async def init(self, user_id: str) -> None: ...
    async def delete_database(self) -> None: ...
    async def terminate(self, reason: str) -> None: ...


class AuthPort(Protocol):
    async def get_cached_access_token(self) -> str: ...
    async def get_access_token(self) -> str: ...
    async def logout(self) -> None: ...


class UserPort(Protocol):
    async def get_self(self) -> UserIdentity: ...
    async def load_users(self) -> None: ...
    async def set_default_picture(self) -> None: ...
    async def get_username_suggestion(self) -> None: ...
    def self_user(self) -> Optional[UserIdentity]: ...
    def set_self_devices(self, devices: Sequence[LocalClient]) -> None: ...
    def is_temporary_guest(self) -> bool: ...
    def is_activated_account(self) -> bool: ...
    def should_change_username(self) -> bool: ...
    def connect_requests(self) -> List[Any]: ...


class ClientPort(Protocol):
    async def init(self, user: UserIdentity) -> None: ...
    async def get_valid_local_client(self) -> LocalClient: ...
    async def get_clients_for_self(self) -> List[LocalClient]: ...
    async def update_clients_for_self(self) -> List[LocalClient]: ...
    def is_current_client_permanent(self) -> bool: ...
    def construct_cookie_label_key(self, login: str) -> str: ...


class CryptographyPort(Protocol):
    async def load_cryptobox(self, client: LocalClient) -> None: ...


class StreamPort(Protocol):
    async def connect(self) -> None: ...
    async def disconnect(self, trigger: StreamChangeTrigger) -> None: ...
    async def reconnect(self, trigger: StreamChangeTrigger) -> None: ...
    async def initialize_from_stream(self) -> int: ...


class ConversationPort(Protocol):
    async def get_conversations(self) -> List[Any]: ...
    def map_connections(self, connections: List[Any]) -> None: ...
    async def initialize_conversations(self) -> None: ...
    def get_most_recent_conversation(self) -> Optional[Any]: ...
    async def update_conversations_on_app_init(self) -> None: ...
    def cleanup_conversations(self) -> None: ...
    async def leave_guest_room(self) -> None: ...


class ConnectionPort(Protocol):
    async def get_connections(self) -> List[Any]: ...


class TeamPort(Protocol):
    async def get_team(self) -> Any: ...


class PropertiesPort(Protocol):
    async def init(self, user: UserIdentity) -> None: ...
    async def check_privacy_permission(self) -> None: ...
    async def save_preference(self, key: str, value: Any) -> None: ...


class NotificationPort(Protocol):
    async def check_permission(self) -> None: ...
    def clear_notifications(self) -> None: ...


class CallingPort(Protocol):
    def leave_call_on_unload(self) -> None: ...


class AudioPort(Protocol):
    def init(self, preload: bool = True) -> None: ...


class LifecycleRepositoryPort(Protocol):
    def init(self) -> None: ...


class ProtocolSchemaPort(Protocol):
    async def load_schema(self) -> None: ...


class ViewPort(Protocol):
    def update_progress(self, percent: float, message: Optional[str] = None) -> None: ...
    def show_interface(self, screen: InitialScreen, conversation: Optional[Any] = None) -> None: ...


class ConnectivityPort(Protocol):
    async def run_when_online(self, trigger: ConnectivityTrigger) -> None: ...


class CrashReporterPort(Protocol):
    def report(self, error: BaseException, context: Optional[dict] = None) -> None: ...


class Platform(Protocol):
    """宿主环境信号源 (浏览器窗口 / 桌面壳)"""

    def is_online(self) -> bool: ...
    def on_online(self, callback: Callable[[], Any]) -> Unsubscribe: ...
    def on_offline(self, callback: Callable[[], Any]) -> Unsubscribe: ...
    def on_before_unload(self, callback: Callable[[], Any]) -> Unsubscribe: ...
    def on_unload(self, callback: Callable[[], Any]) -> Unsubscribe: ...
    def navigate(self, url: str) -> None: ...
    def reload(self, force: bool = False) -> None: ...
    def is_reload(self) -> bool: ...
    def is_desktop(self) -> bool: ...
    def is_localhost(self) -> bool: ...
    def referrer(self) -> str: ...
    def location(self) -> str: ...
    def query_string(self) -> str: ...
