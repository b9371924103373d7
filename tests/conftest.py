"""
测试全局 conftest.py
提供启动编排相关的共享 fake 协作者
"""
import sys
import os
from dataclasses import dataclass, field
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# 确保项目根目录在 sys.path 最前面
_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from core.cache.persistent_cache import MemoryPersistentCache  # noqa: E402
from core.config import Settings  # noqa: E402
from core.container import Collaborators, Container  # noqa: E402
from core.platform import PlatformSignals  # noqa: E402
from core.single_instance import MemoryClaimStore  # noqa: E402


@dataclass
class FakeUser:
    id: str = "user-1"
    email: Optional[str] = "alice@example.com"
    phone: Optional[str] = None
    activated: bool = True
    temporary_guest: bool = False
    picture: bool = True
    username: bool = True

    def has_activated_identity(self) -> bool:
        return self.activated

    def is_temporary_guest(self) -> bool:
        return self.temporary_guest

    def has_picture(self) -> bool:
        return self.picture

    def has_username(self) -> bool:
        return self.username


@dataclass
class FakeClient:
    id: str = "client-1"
    type: str = "permanent"


@dataclass
class FakeView:
    progress: List[tuple] = field(default_factory=list)
    shown: List[tuple] = field(default_factory=list)

    def update_progress(self, percent, message=None):
        self.progress.append((percent, message))

    def show_interface(self, screen, conversation=None):
        self.shown.append((screen, conversation))


def make_collaborators(user: Optional[FakeUser] = None, client: Optional[FakeClient] = None) -> Collaborators:
    """构造一组全部成功的协作者"""
    user = user or FakeUser()
    client = client or FakeClient()

    storage = MagicMock()
    storage.check_available = AsyncMock()
    storage.init = AsyncMock()
    storage.delete_database = AsyncMock()
    storage.terminate = AsyncMock()

    auth = MagicMock()
    auth.get_cached_access_token = AsyncMock(return_value="cached-token")
    auth.get_access_token = AsyncMock(return_value="fresh-token")
    auth.logout = AsyncMock()

    users = MagicMock()
    users.get_self = AsyncMock(return_value=user)
    users.load_users = AsyncMock()
    users.set_default_picture = AsyncMock()
    users.get_username_suggestion = AsyncMock()
    users.self_user.return_value = user
    users.is_temporary_guest.side_effect = lambda: user.temporary_guest
    users.is_activated_account.side_effect = lambda: user.activated
    users.should_change_username.return_value = False
    users.connect_requests.return_value = []

    clients = MagicMock()
    clients.init = AsyncMock()
    clients.get_valid_local_client = AsyncMock(return_value=client)
    clients.get_clients_for_self = AsyncMock(return_value=[client])
    clients.update_clients_for_self = AsyncMock(return_value=[client, FakeClient(id="client-2", type="temporary")])
    clients.is_current_client_permanent.side_effect = lambda: client.type == "permanent"
    clients.construct_cookie_label_key.side_effect = lambda login: f"z.storage.StorageKey.AUTH.COOKIE_LABEL@{login}"

    cryptography = MagicMock()
    cryptography.load_cryptobox = AsyncMock()

    stream = MagicMock()
    stream.connect = AsyncMock()
    stream.disconnect = AsyncMock()
    stream.reconnect = AsyncMock()
    stream.initialize_from_stream = AsyncMock(return_value=120)

    conversations = MagicMock()
    conversations.get_conversations = AsyncMock(return_value=[object()] * 60)
    conversations.initialize_conversations = AsyncMock()
    conversations.update_conversations_on_app_init = AsyncMock()
    conversations.leave_guest_room = AsyncMock()
    conversations.get_most_recent_conversation.return_value = None

    connections = MagicMock()
    connections.get_connections = AsyncMock(return_value=[object()] * 3)

    team = MagicMock()
    team.get_team = AsyncMock()

    properties = MagicMock()
    properties.init = AsyncMock()
    properties.check_privacy_permission = AsyncMock()
    properties.save_preference = AsyncMock()

    notifications = MagicMock()
    notifications.check_permission = AsyncMock()

    protocol_schema = MagicMock()
    protocol_schema.load_schema = AsyncMock()

    return Collaborators(
        storage=storage,
        auth=auth,
        users=users,
        clients=clients,
        cryptography=cryptography,
        stream=stream,
        conversations=conversations,
        connections=connections,
        team=team,
        properties=properties,
        notifications=notifications,
        calling=MagicMock(),
        audio=MagicMock(),
        lifecycle_repository=MagicMock(),
        protocol_schema=protocol_schema,
        view=FakeView(),
    )


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        LOG_DIR=tmp_path / "logs",
        LOCAL_STORE_PATH=tmp_path / "local_store.db",
        CLAIM_STORE_PATH=tmp_path / "claim.db",
        NOTIFICATION_CHECK_SECONDS=0,
        CONNECTIVITY_BASE_DELAY=0,
    )


@pytest.fixture
def platform():
    return PlatformSignals(location="https://app.wire.com/?env=prod", referrer="")


@pytest.fixture
def connectivity():
    fake = MagicMock()
    fake.run_when_online = AsyncMock()
    fake.close = AsyncMock()
    return fake


@pytest.fixture
def claim_store():
    return MemoryClaimStore()


@pytest.fixture
def local_store():
    return MemoryPersistentCache()


@pytest.fixture
def collaborators():
    return make_collaborators()


@pytest.fixture
def container(test_settings, platform, connectivity, claim_store, local_store):
    return Container(
        test_settings,
        platform=platform,
        local_store=local_store,
        claim_store=claim_store,
        connectivity=connectivity,
    )
