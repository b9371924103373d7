"""
LifecycleController 测试

覆盖登出分类、保留键计算、登录地址拼接、刷新与恢复动作执行。
"""
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.constants import ConnectivityTrigger, StorageKey, StreamChangeTrigger, UpdateSource
from core.event_bus import (
    LIFECYCLE_RESTART_REQUESTED,
    LIFECYCLE_SIGN_OUT,
    LIFECYCLE_SIGNED_OUT,
    WARNING_SHOW,
    EventBus,
    WarningType,
)
from core.lifecycle import LifecycleController, LifecycleState, append_parameter
from core.platform import PlatformSignals
from core.sign_out import SignOutReason
from models.recovery import (
    ForceLogout,
    RedirectToLogin,
    ReloadAfterConnectivity,
    WaitForConnectivityThenReload,
    WaitForConnectivityThenRetryInit,
)
from tests.conftest import FakeClient, FakeUser, make_collaborators

OWN_LABEL = f"{StorageKey.COOKIE_LABEL}@alice@example.com"
OTHER_LABEL = f"{StorageKey.COOKIE_LABEL}@bob@example.com"
DRAFT = f"{StorageKey.CONVERSATION_INPUT}@conv-1"


@pytest.fixture
def stored_keys(local_store):
    for key in (StorageKey.SHOW_LOGIN, StorageKey.PERSIST, OWN_LABEL, OTHER_LABEL, DRAFT, "z.misc"):
        local_store.set(key, "1")
    return local_store


@pytest.fixture
def lifecycle(container, collaborators):
    return container.build_lifecycle(collaborators)


class TestAppendParameter:

    def test_adds_query_separator(self):
        assert append_parameter("/auth/", "reason=expired") == "/auth/?reason=expired"

    def test_extends_existing_query(self):
        assert append_parameter("/auth/?env=prod", "reason=expired") == "/auth/?env=prod&reason=expired"


class TestLoginUrl:

    @pytest.mark.parametrize("reason,expected", [
        (SignOutReason.SESSION_EXPIRED, "/auth/?env=prod&reason=expired#login"),
        (SignOutReason.MULTIPLE_TABS, "/auth/?env=prod&reason=multiple_tabs#login"),
        (SignOutReason.APP_INIT, "/auth/?env=prod#login"),
        (SignOutReason.INDEXED_DB, "/auth/?env=prod#login"),
        (SignOutReason.NOT_SIGNED_IN, "/auth/?env=prod"),
    ])
    def test_build_login_url(self, lifecycle, reason, expected):
        assert lifecycle.build_login_url(reason) == expected

    def test_temporary_guest_goes_to_website(self, container):
        lifecycle = container.build_lifecycle(make_collaborators(user=FakeUser(activated=False, temporary_guest=True)))
        assert lifecycle.build_login_url(SignOutReason.USER_REQUESTED) == "https://wire.com/"

    def test_temporary_guest_not_signed_in_goes_to_plain_login(self, container):
        lifecycle = container.build_lifecycle(make_collaborators(user=FakeUser(activated=False, temporary_guest=True)))
        assert lifecycle.build_login_url(SignOutReason.NOT_SIGNED_IN) == "/auth/?env=prod"

    def test_registered_user_requested_goes_to_login(self, lifecycle):
        assert lifecycle.build_login_url(SignOutReason.USER_REQUESTED) == "/auth/?env=prod#login"

    @pytest.mark.asyncio
    async def test_redirect_waits_for_connectivity(self, lifecycle, platform, connectivity):
        url = await lifecycle.redirect_to_login(SignOutReason.NOT_SIGNED_IN)

        connectivity.run_when_online.assert_awaited_once_with(ConnectivityTrigger.LOGIN_REDIRECT)
        assert platform.navigations == [url]
        assert lifecycle.state is LifecycleState.REDIRECTING


class TestRetainedKeys:

    def test_permanent_client_keeps_persist_and_labels(self, lifecycle):
        keep = lifecycle.compute_retained_keys(
            [StorageKey.SHOW_LOGIN, StorageKey.PERSIST, OWN_LABEL, OTHER_LABEL, "z.misc"], clear_data=False
        )
        assert keep == {StorageKey.SHOW_LOGIN, StorageKey.PERSIST, OWN_LABEL, OTHER_LABEL}

    def test_clear_data_drops_persist_and_own_label(self, lifecycle):
        keep = lifecycle.compute_retained_keys([StorageKey.PERSIST, OWN_LABEL, OTHER_LABEL], clear_data=True)
        assert keep == {StorageKey.SHOW_LOGIN, OTHER_LABEL}

    def test_temporary_client_never_keeps_persist(self, container):
        lifecycle = container.build_lifecycle(make_collaborators(client=FakeClient(type="temporary")))
        keep = lifecycle.compute_retained_keys([StorageKey.PERSIST], clear_data=False)
        assert keep == {StorageKey.SHOW_LOGIN}

    def test_without_self_user_all_labels_are_kept(self, container):
        collaborators = make_collaborators()
        collaborators.users.self_user.return_value = None
        lifecycle = container.build_lifecycle(collaborators)

        keep = lifecycle.compute_retained_keys([OWN_LABEL, OTHER_LABEL], clear_data=True)
        assert keep == {StorageKey.SHOW_LOGIN, OWN_LABEL, OTHER_LABEL}


class TestLogout:

    @pytest.mark.asyncio
    async def test_multiple_tabs_never_calls_backend(self, lifecycle, collaborators, platform, stored_keys):
        await lifecycle.logout(SignOutReason.MULTIPLE_TABS)

        collaborators.auth.logout.assert_not_awaited()
        collaborators.stream.disconnect.assert_awaited_once_with(StreamChangeTrigger.LOGOUT)
        assert platform.last_navigation == "/auth/?env=prod&reason=multiple_tabs#login"

    @pytest.mark.asyncio
    async def test_user_requested_online_calls_backend_then_cleans_up(
        self, lifecycle, collaborators, platform, stored_keys
    ):
        await lifecycle.logout(SignOutReason.USER_REQUESTED)

        collaborators.auth.logout.assert_awaited_once()
        assert set(stored_keys.keys()) == {StorageKey.SHOW_LOGIN, StorageKey.PERSIST, OWN_LABEL, OTHER_LABEL}
        assert platform.last_navigation == "/auth/?env=prod#login"

    @pytest.mark.asyncio
    async def test_session_expired_keeps_conversation_drafts(self, lifecycle, stored_keys):
        await lifecycle.logout(SignOutReason.SESSION_EXPIRED)
        assert DRAFT in stored_keys.keys()
        assert "z.misc" not in stored_keys.keys()

    @pytest.mark.asyncio
    async def test_clear_data_deletes_database(self, lifecycle, collaborators, stored_keys):
        await lifecycle.logout(SignOutReason.USER_REQUESTED, clear_data=True)

        collaborators.storage.delete_database.assert_awaited_once()
        assert set(stored_keys.keys()) == {StorageKey.SHOW_LOGIN, OTHER_LABEL}

    @pytest.mark.asyncio
    async def test_database_deletion_failure_still_redirects(self, lifecycle, collaborators, platform):
        collaborators.storage.delete_database.side_effect = RuntimeError("locked")

        await lifecycle.logout(SignOutReason.USER_REQUESTED, clear_data=True)

        assert platform.last_navigation == "/auth/?env=prod#login"

    @pytest.mark.asyncio
    async def test_backend_failure_still_cleans_up(self, lifecycle, collaborators, platform):
        collaborators.auth.logout.side_effect = RuntimeError("503")

        await lifecycle.logout(SignOutReason.USER_REQUESTED)

        collaborators.stream.disconnect.assert_awaited_once()
        assert platform.last_navigation == "/auth/?env=prod#login"

    @pytest.mark.asyncio
    async def test_stream_disconnect_failure_still_redirects(self, lifecycle, collaborators, platform, stored_keys):
        collaborators.stream.disconnect.side_effect = [RuntimeError("socket already gone"), None]

        await lifecycle.logout(SignOutReason.MULTIPLE_TABS)

        assert lifecycle.state is LifecycleState.REDIRECTING
        assert platform.navigations == ["/auth/?env=prod&reason=multiple_tabs#login"]
        assert "z.misc" not in stored_keys.keys()

    @pytest.mark.asyncio
    async def test_cache_failure_still_redirects(self, lifecycle, collaborators, platform, container):
        container.cache.clear_cache = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        events = []
        container.bus.subscribe(LIFECYCLE_SIGNED_OUT, events.append)

        await lifecycle.logout(SignOutReason.SESSION_EXPIRED)
        await container.bus.drain()

        collaborators.stream.disconnect.assert_awaited_once()
        assert events == [{"clear_data": False}]
        assert platform.last_navigation == "/auth/?env=prod&reason=expired#login"

    @pytest.mark.asyncio
    async def test_failed_redirect_allows_another_logout(self, lifecycle, platform, connectivity):
        connectivity.run_when_online.side_effect = [RuntimeError("probe crashed"), None]

        with pytest.raises(RuntimeError):
            await lifecycle.logout(SignOutReason.MULTIPLE_TABS)
        assert lifecycle.state is LifecycleState.READY

        await lifecycle.logout(SignOutReason.MULTIPLE_TABS)
        assert platform.navigations == ["/auth/?env=prod&reason=multiple_tabs#login"]

    @pytest.mark.asyncio
    async def test_offline_logout_waits_for_online(self, lifecycle, collaborators, platform):
        await platform.set_online(False)

        await lifecycle.logout(SignOutReason.USER_REQUESTED)
        collaborators.auth.logout.assert_not_awaited()
        assert platform.navigations == []

        await platform.set_online(True)
        collaborators.auth.logout.assert_awaited_once()
        assert platform.last_navigation == "/auth/?env=prod#login"

    @pytest.mark.asyncio
    async def test_second_logout_is_ignored(self, lifecycle, collaborators, platform):
        await lifecycle.logout(SignOutReason.SESSION_EXPIRED)
        await lifecycle.logout(SignOutReason.USER_REQUESTED)

        collaborators.auth.logout.assert_not_awaited()
        assert len(platform.navigations) == 1

    @pytest.mark.asyncio
    async def test_publishes_signed_out(self, container, lifecycle):
        events = []
        container.bus.subscribe(LIFECYCLE_SIGNED_OUT, events.append)

        await lifecycle.logout(SignOutReason.CLIENT_REMOVED, clear_data=True)
        await container.bus.drain()

        assert events == [{"clear_data": True}]

    @pytest.mark.asyncio
    async def test_sign_out_event_triggers_logout(self, container, lifecycle, platform):
        await container.bus.publish(
            LIFECYCLE_SIGN_OUT, {"reason": "deleted", "clear_data": True}, wait=True
        )
        assert platform.last_navigation == "/auth/?env=prod&reason=deleted#login"


class TestRefreshAndUpdate:

    @pytest.mark.asyncio
    async def test_browser_refresh_reloads_page(self, lifecycle, platform):
        await lifecycle.refresh()
        assert platform.reloads == [True]
        assert lifecycle.state is LifecycleState.RELOADING

    @pytest.mark.asyncio
    async def test_desktop_refresh_asks_shell_to_restart(self, collaborators, connectivity, local_store):
        from repositories.cache_repo import CacheRepository

        bus = EventBus()
        platform = PlatformSignals(desktop=True)
        lifecycle = LifecycleController(
            platform=platform,
            bus=bus,
            connectivity=connectivity,
            auth=collaborators.auth,
            stream=collaborators.stream,
            users=collaborators.users,
            clients=collaborators.clients,
            storage=collaborators.storage,
            cache=CacheRepository(local_store),
        )
        sources = []
        bus.subscribe(LIFECYCLE_RESTART_REQUESTED, sources.append)

        await lifecycle.refresh()
        await bus.drain()

        assert sources == [UpdateSource.WEBAPP]
        assert platform.reloads == []

    @pytest.mark.asyncio
    async def test_update_shows_warning(self, container, lifecycle):
        warnings = []
        container.bus.subscribe(WARNING_SHOW, warnings.append)

        await lifecycle.update()
        await container.bus.drain()

        assert warnings == [WarningType.LIFECYCLE_UPDATE]


class TestExecute:

    @pytest.mark.asyncio
    async def test_redirect_to_login(self, lifecycle, platform):
        await lifecycle.execute(RedirectToLogin(reason=SignOutReason.SESSION_EXPIRED))
        assert platform.last_navigation == "/auth/?env=prod&reason=expired#login"

    @pytest.mark.asyncio
    async def test_force_logout(self, lifecycle, collaborators):
        await lifecycle.execute(ForceLogout(reason=SignOutReason.APP_INIT))
        collaborators.auth.logout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reload_after_connectivity(self, lifecycle, platform, connectivity):
        await lifecycle.execute(ReloadAfterConnectivity(trigger=ConnectivityTrigger.ACCESS_TOKEN_RETRIEVAL))

        connectivity.run_when_online.assert_awaited_once_with(ConnectivityTrigger.ACCESS_TOKEN_RETRIEVAL)
        assert platform.reloads == [False]

    @pytest.mark.asyncio
    async def test_wait_then_reload(self, lifecycle, platform):
        await lifecycle.execute(WaitForConnectivityThenReload())
        assert platform.reloads == [False]

    @pytest.mark.asyncio
    async def test_wait_then_retry_is_a_no_op(self, lifecycle, platform):
        await lifecycle.execute(WaitForConnectivityThenRetryInit())
        assert platform.reloads == []
        assert platform.navigations == []

    @pytest.mark.asyncio
    async def test_unknown_action_raises(self, lifecycle):
        with pytest.raises(TypeError):
            await lifecycle.execute(MagicMock())


class TestDebugging:

    @pytest.mark.asyncio
    async def test_enable_and_disable(self, lifecycle, collaborators):
        core_logger = logging.getLogger("core")
        original = core_logger.level
        try:
            await lifecycle.enable_debugging()
            assert core_logger.level == logging.DEBUG
            collaborators.properties.save_preference.assert_awaited_with("enable_debugging", True)

            await lifecycle.disable_debugging()
            assert core_logger.level == logging.INFO
            collaborators.properties.save_preference.assert_awaited_with("enable_debugging", False)
        finally:
            core_logger.setLevel(original)
