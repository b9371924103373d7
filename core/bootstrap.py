import asyncio
import uuid
from typing import Any, List, Optional, Sequence, Tuple

from core.constants import (
    LOGIN_REFERRER_MARKERS,
    MSG_RECEIVED_SELF_USER,
    MSG_RECEIVED_USER_DATA,
    MSG_UPDATED_FROM_NOTIFICATIONS,
    MSG_VALIDATED_CLIENT,
    PROGRESS_ACCESS_TOKEN,
    PROGRESS_CHECKPOINTS,
    PROGRESS_CLIENT,
    PROGRESS_CLIENTS,
    PROGRESS_CRYPTOGRAPHY,
    PROGRESS_DONE,
    PROGRESS_NOTIFICATIONS,
    PROGRESS_SELF_USER,
    PROGRESS_USER_DATA,
    ConnectivityTrigger,
    InitialScreen,
    StreamChangeTrigger,
)
from core.context import init_state_var, instance_id_var
from core.event_bus import (
    CONNECTIVITY_OFFLINE,
    CONNECTIVITY_ONLINE,
    LIFECYCLE_LOADED,
    WARNING_DISMISS,
    WARNING_SHOW,
    EventBus,
    WarningType,
)
from core.exceptions import AppError, AuthError, AuthErrorType, InvalidTransitionError
from core.failure_classifier import FailureHandler
from core.helpers.metrics import INIT_PROGRESS_PERCENT, INIT_RUNS_TOTAL, set_ready
from core.lifecycle import LifecycleController
from core.logging import get_logger
from core.ports import (
    AudioPort,
    AuthPort,
    CallingPort,
    ClientPort,
    ConnectionPort,
    ConnectivityPort,
    ConversationPort,
    CryptographyPort,
    LifecycleRepositoryPort,
    LocalClient,
    NotificationPort,
    Platform,
    PropertiesPort,
    ProtocolSchemaPort,
    StoragePort,
    StreamPort,
    TeamPort,
    Unsubscribe,
    UserIdentity,
    UserPort,
    ViewPort,
)
from core.shutdown import TeardownCoordinator
from core.sign_out import SignOutReason
from core.single_instance import SingleInstanceCoordinator
from core.states import PIPELINE_ORDER, InitState, validate_transition
from models.lifecycle import ProgressReport
from services.exception_handler import GlobalExceptionHandler
from services.telemetry_service import AppInitStatisticsValue, AppInitTelemetry, AppInitTimingsStep

logger = get_logger(__name__)


class InitializationOrchestrator:
    """
    应用启动编排器

    把会话从"什么都没加载"推进到"界面可交互"：
    严格按 InitState 顺序执行，每个阶段一个协程；只有两组阶段并行
    ({自身用户, 协议描述} 与 {会话列表, 联系人列表})，且必须同时成功。
    任何阶段失败都原样交给 FailureHandler，编排器本身不做恢复。
    """

    # 注册实例之后的每个阶段入口都要重新确认声明仍然有效
    _CLAIM_GUARDED_FROM = InitState.LOADING_TOKEN

    def __init__(
        self,
        *,
        platform: Platform,
        bus: EventBus,
        storage: StoragePort,
        coordinator: SingleInstanceCoordinator,
        auth: AuthPort,
        users: UserPort,
        clients: ClientPort,
        cryptography: CryptographyPort,
        stream: StreamPort,
        conversations: ConversationPort,
        connections: ConnectionPort,
        team: TeamPort,
        properties: PropertiesPort,
        notifications: NotificationPort,
        calling: CallingPort,
        audio: AudioPort,
        lifecycle_repository: LifecycleRepositoryPort,
        protocol_schema: ProtocolSchemaPort,
        view: ViewPort,
        connectivity: ConnectivityPort,
        lifecycle: LifecycleController,
        failure_handler: FailureHandler,
        teardown: TeardownCoordinator,
        task_runner: GlobalExceptionHandler,
        telemetry: Optional[AppInitTelemetry] = None,
        instance_id: Optional[str] = None,
        app_version: str = "",
        notification_check_seconds: float = 10.0,
    ) -> None:
        self.platform = platform
        self.bus = bus
        self.storage = storage
        self.coordinator = coordinator
        self.auth = auth
        self.users = users
        self.clients = clients
        self.cryptography = cryptography
        self.stream = stream
        self.conversations = conversations
        self.connections = connections
        self.team = team
        self.properties = properties
        self.notifications = notifications
        self.calling = calling
        self.audio = audio
        self.lifecycle_repository = lifecycle_repository
        self.protocol_schema = protocol_schema
        self.view = view
        self.connectivity = connectivity
        self.lifecycle = lifecycle
        self.failure_handler = failure_handler
        self.teardown = teardown
        self.task_runner = task_runner
        self.telemetry = telemetry or AppInitTelemetry()
        self.instance_id = instance_id or uuid.uuid4().hex
        self.app_version = app_version
        self.notification_check_seconds = notification_check_seconds

        self.state = InitState.NOT_STARTED
        self.progress: List[ProgressReport] = []
        self.background_task: Optional[asyncio.Task] = None
        self.permission_task: Optional[asyncio.Task] = None
        self._online_watch: List[Unsubscribe] = []
        self._platform_hooks: List[Unsubscribe] = []

        self.coordinator.set_on_superseded(self._on_extra_instance_started)

    # === 主流程 ===

    async def run(self, was_reload: Optional[bool] = None) -> InitState:
        """
        执行完整的启动流水线

        Returns:
            FULLY_LOADED，或失败并交给 FailureHandler 后的 FAILED
        """
        if self.state != InitState.NOT_STARTED:
            raise InvalidTransitionError(f"Orchestrator already ran (state: {self.state.value}), create a new one")
        if was_reload is None:
            was_reload = self.platform.is_reload()
        instance_id_var.set(self.instance_id)
        logger.info(f"🚀 Starting app init (instance '{self.instance_id}', reload={was_reload})")

        try:
            await self._enter(InitState.CHECKING_STORAGE)
            await self._check_storage()

            await self._enter(InitState.REGISTERING_INSTANCE)
            await self._register_single_instance()

            await self._enter(InitState.LOADING_TOKEN)
            await self._load_access_token()

            await self._enter(InitState.LOADING_SELF_USER)
            await self._load_self_user()

            await self._enter(InitState.VALIDATING_CLIENT)
            client = await self._validate_client()

            await self._enter(InitState.INITIALIZING_CRYPTO)
            await self._init_cryptography(client)

            await self._enter(InitState.CONNECTING_STREAM)
            await self.stream.connect()

            await self._enter(InitState.LOADING_CONVERSATIONS)
            await self._load_conversations()

            await self._enter(InitState.LOADING_TEAM)
            await self.team.get_team()

            await self._enter(InitState.LOADING_USERS)
            await self.users.load_users()

            await self._enter(InitState.REPLAYING_NOTIFICATIONS)
            await self._replay_notifications()

            await self._enter(InitState.INITIALIZING_CONVERSATIONS)
            await self._initialize_conversations()

            await self._enter(InitState.UPDATING_CLIENTS)
            await self._update_clients()

            await self._enter(InitState.SHOWING_INTERFACE)
            await self._show_interface()

            await self._enter(InitState.FULLY_LOADED)
            self.background_task = self.task_runner.create_task(
                self._run_background_steps(), name="app_init_background"
            )
        except Exception as error:
            await self._fail(error, was_reload)
            return self.state

        INIT_RUNS_TOTAL.labels(result=InitState.FULLY_LOADED.value).inc()
        return self.state

    def _transition(self, new_state: InitState) -> None:
        if not validate_transition(self.state, new_state):
            raise InvalidTransitionError(
                f"Illegal init transition {self.state.value} -> {new_state.value}",
                context={"from": self.state.value, "to": new_state.value},
            )
        logger.debug(f"Init state {self.state.value} -> {new_state.value}")
        self.state = new_state
        init_state_var.set(new_state.value)

    async def _enter(self, new_state: InitState) -> None:
        if self._is_claim_guarded(new_state) and not await self.coordinator.verify():
            raise AuthError(AuthErrorType.MULTIPLE_TABS, "Instance claim superseded by another context")
        self._transition(new_state)

    def _is_claim_guarded(self, state: InitState) -> bool:
        return PIPELINE_ORDER.index(state) >= PIPELINE_ORDER.index(self._CLAIM_GUARDED_FROM)

    async def _fail(self, error: Exception, was_reload: bool) -> None:
        if self.state != InitState.FAILED:
            self._transition(InitState.FAILED)
        message = f"Could not initialize app version '{self.app_version}'"
        if self.platform.is_desktop():
            message += " - desktop shell"
        logger.warning(f"{message}: {type(error).__name__}: {error}")
        INIT_RUNS_TOTAL.labels(result=InitState.FAILED.value).inc()
        await self.failure_handler.handle(error, was_reload)

    def _report_progress(self, percent: float, message: Optional[str] = None) -> None:
        if percent not in PROGRESS_CHECKPOINTS:
            raise InvalidTransitionError(f"Unknown progress checkpoint {percent}")
        report = ProgressReport(percent=percent, message=message)
        if self.progress and report.percent < self.progress[-1].percent:
            raise InvalidTransitionError(
                f"Progress must not decrease ({self.progress[-1].percent} -> {report.percent})"
            )
        self.progress.append(report)
        INIT_PROGRESS_PERCENT.set(report.percent)
        self.view.update_progress(report.percent, report.message)

    # === 各阶段 ===

    async def _check_storage(self) -> None:
        await self.storage.check_available()

    async def _register_single_instance(self) -> None:
        if not await self.coordinator.register_instance(self.instance_id):
            raise AuthError(AuthErrorType.MULTIPLE_TABS)
        self._platform_hooks.append(self.platform.on_before_unload(self.coordinator.deregister_instance))

    async def _load_access_token(self) -> None:
        referrer = self.platform.referrer().lower()
        is_login_redirect = any(marker in referrer for marker in LOGIN_REFERRER_MARKERS)
        if self.platform.is_localhost() or is_login_redirect:
            await self.auth.get_cached_access_token()
        else:
            await self.auth.get_access_token()
        self._report_progress(PROGRESS_ACCESS_TOKEN)
        self.telemetry.time_step(AppInitTimingsStep.RECEIVED_ACCESS_TOKEN)

    async def _load_self_user(self) -> None:
        await asyncio.gather(self._initiate_self_user(), self.protocol_schema.load_schema())
        self._report_progress(PROGRESS_SELF_USER, MSG_RECEIVED_SELF_USER)
        self.telemetry.time_step(AppInitTimingsStep.RECEIVED_SELF_USER)

    async def _initiate_self_user(self) -> UserIdentity:
        user = await self.users.get_self()
        logger.info(f"Loaded self user with ID '{user.id}'")

        if not user.has_activated_identity():
            logger.info("User does not have an activated identity and seems to be a temporary guest")
            if not user.is_temporary_guest():
                raise AppError("User does not have an activated identity", context={"user_id": user.id})

        await self.storage.init(user.id)
        await self.clients.init(user)
        await self.properties.init(user)
        await self._check_user_information(user)
        return user

    async def _check_user_information(self, user: UserIdentity) -> None:
        if not user.has_activated_identity():
            return
        if not user.has_picture():
            await self.users.set_default_picture()
        if not user.has_username():
            await self.users.get_username_suggestion()

    async def _validate_client(self) -> LocalClient:
        client = await self.clients.get_valid_local_client()
        await self.clients.get_clients_for_self()
        self._report_progress(PROGRESS_CLIENT, MSG_VALIDATED_CLIENT)
        self.telemetry.time_step(AppInitTimingsStep.VALIDATED_CLIENT)
        self.telemetry.add_statistic(AppInitStatisticsValue.CLIENT_TYPE, client.type)
        return client

    async def _init_cryptography(self, client: LocalClient) -> None:
        await self.cryptography.load_cryptobox(client)
        self._report_progress(PROGRESS_CRYPTOGRAPHY)
        self.telemetry.time_step(AppInitTimingsStep.INITIALIZED_CRYPTOGRAPHY)

    async def _load_conversations(self) -> None:
        conversations, connections = await asyncio.gather(
            self.conversations.get_conversations(),
            self.connections.get_connections(),
        )
        self._report_progress(PROGRESS_USER_DATA, MSG_RECEIVED_USER_DATA)
        self.telemetry.time_step(AppInitTimingsStep.RECEIVED_USER_DATA)
        self.telemetry.add_statistic(AppInitStatisticsValue.CONVERSATIONS, len(conversations), 50)
        self.telemetry.add_statistic(AppInitStatisticsValue.CONNECTIONS, len(connections), 50)

        self.conversations.map_connections(connections)
        self._subscribe_to_unload_events()

    async def _replay_notifications(self) -> None:
        count = await self.stream.initialize_from_stream()
        self.telemetry.time_step(AppInitTimingsStep.UPDATED_FROM_NOTIFICATIONS)
        self.telemetry.add_statistic(AppInitStatisticsValue.NOTIFICATIONS, count, 100)

    async def _initialize_conversations(self) -> None:
        await self.conversations.initialize_conversations()
        self._report_progress(PROGRESS_NOTIFICATIONS, MSG_UPDATED_FROM_NOTIFICATIONS)
        self.watch_online_status()

    async def _update_clients(self) -> None:
        devices = await self.clients.update_clients_for_self()
        self._report_progress(PROGRESS_CLIENTS)
        self.telemetry.add_statistic(AppInitStatisticsValue.CLIENTS, len(devices))
        self.telemetry.time_step(AppInitTimingsStep.APP_PRE_LOADED)
        self.users.set_self_devices(devices)
        logger.info("App pre-loading completed")

    def decide_initial_screen(self) -> Tuple[InitialScreen, Optional[Any]]:
        """按优先级选择首屏，第一个命中者胜出"""
        conversation = self.conversations.get_most_recent_conversation()
        if self.users.is_temporary_guest():
            return InitialScreen.TEMPORARY_GUEST, None
        if self.users.should_change_username():
            return InitialScreen.TAKEOVER, None
        if conversation is not None:
            return InitialScreen.CONVERSATION, conversation
        if self.users.connect_requests():
            return InitialScreen.CONNECTION_REQUESTS, None
        return InitialScreen.NONE, None

    async def _show_interface(self) -> None:
        screen, conversation = self.decide_initial_screen()
        logger.info(f"Showing application UI ({screen.value})")
        self._report_progress(PROGRESS_DONE)
        self.view.show_interface(screen, conversation)

        self.telemetry.report()
        await self.bus.publish(LIFECYCLE_LOADED, {"instance_id": self.instance_id})
        self.telemetry.time_step(AppInitTimingsStep.APP_LOADED)
        set_ready(True)

        self.permission_task = self.task_runner.create_task(
            self._check_permissions(), name="permission_check"
        )

    async def _check_permissions(self) -> None:
        await self.properties.check_privacy_permission()
        await asyncio.sleep(self.notification_check_seconds)
        await self.notifications.check_permission()

    async def _run_background_steps(self) -> None:
        await self.conversations.update_conversations_on_app_init()
        self.telemetry.time_step(AppInitTimingsStep.UPDATED_CONVERSATIONS)
        self.lifecycle_repository.init()
        self.audio.init(True)
        self.conversations.cleanup_conversations()
        logger.info("✅ App fully loaded")

    # === 稳态连通性 ===

    def watch_online_status(self) -> None:
        if self._online_watch:
            return
        logger.info("Watching internet connectivity status")
        self._online_watch = [
            self.platform.on_offline(self.on_internet_connection_lost),
            self.platform.on_online(self.on_internet_connection_gained),
        ]

    async def on_internet_connection_lost(self) -> None:
        logger.warning("Internet connection lost")
        await self.stream.disconnect(StreamChangeTrigger.OFFLINE)
        await self.bus.publish(CONNECTIVITY_OFFLINE)
        await self.bus.publish(WARNING_SHOW, WarningType.NO_INTERNET)

    async def on_internet_connection_gained(self) -> None:
        logger.info("Internet connection regained. Re-establishing stream connection...")
        await self.connectivity.run_when_online(ConnectivityTrigger.CONNECTION_REGAINED)
        await self.bus.publish(CONNECTIVITY_ONLINE)
        await self.bus.publish(WARNING_DISMISS, WarningType.NO_INTERNET)
        await self.bus.publish(WARNING_SHOW, WarningType.CONNECTIVITY_RECONNECT)
        await self.stream.reconnect(StreamChangeTrigger.ONLINE)

    # === 页面卸载 ===

    def _subscribe_to_unload_events(self) -> None:
        self.teardown.register_cleanup(
            lambda: self.stream.disconnect(StreamChangeTrigger.PAGE_NAVIGATION),
            priority=0, name="stream_disconnect",
        )
        self.teardown.register_cleanup(self.calling.leave_call_on_unload, priority=1, name="leave_call")
        self.teardown.register_cleanup(self._release_session_storage, priority=2, name="session_storage")
        self.teardown.register_cleanup(self.notifications.clear_notifications, priority=3, name="notifications")
        self._platform_hooks.append(self.platform.on_unload(self._on_unload))

    async def _on_unload(self) -> None:
        logger.info("Unload was triggered, disconnecting from the backend.")
        await self.teardown.trigger("unload")

    async def _release_session_storage(self) -> None:
        if self.users.is_activated_account():
            await self.storage.terminate("unload")
            return
        await self.conversations.leave_guest_room()
        await self.storage.delete_database()

    # === 多实例 ===

    def _on_extra_instance_started(self, reason: SignOutReason) -> None:
        # 启动中的流水线在下一个阶段入口发现并失败；失败路径负责跳转
        if self.state == InitState.FAILED and self.failure_handler.waiting_for_connectivity:
            logger.info("Extra instance started while waiting for connectivity, will redirect once online")
            return
        if self.state != InitState.FULLY_LOADED:
            logger.info(f"Extra instance started during {self.state.value}, init pipeline will stop")
            return
        logger.warning("Extra instance started, redirecting this one to login")
        self.task_runner.create_task(self.lifecycle.redirect_to_login(reason), name="extra_instance_redirect")

    def dispose(self) -> None:
        """取消所有平台信号订阅"""
        for unsubscribe in self._online_watch + self._platform_hooks:
            unsubscribe()
        self._online_watch = []
        self._platform_hooks = []
        self.failure_handler.cancel()

    @property
    def progress_percentages(self) -> Sequence[float]:
        return [report.percent for report in self.progress]
