from dataclasses import dataclass
from typing import Optional
import logging

from core.bootstrap import InitializationOrchestrator
from core.cache.persistent_cache import BasePersistentCache, SQLitePersistentCache
from core.config import Settings, settings as default_settings
from core.event_bus import EventBus
from core.failure_classifier import FailureClassifier, FailureHandler
from core.lifecycle import LifecycleController
from core.platform import PlatformSignals
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
    NotificationPort,
    Platform,
    PropertiesPort,
    ProtocolSchemaPort,
    StoragePort,
    StreamPort,
    TeamPort,
    UserPort,
    ViewPort,
)
from core.shutdown import TeardownCoordinator
from core.single_instance import BaseClaimStore, SingleInstanceCoordinator, SQLiteClaimStore
from repositories.cache_repo import CacheRepository
from services.connectivity_service import ConnectivityService
from services.exception_handler import GlobalExceptionHandler
from services.telemetry_service import AppInitTelemetry

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    """领域协作者 (仓库、服务、视图)，由宿主应用提供"""
    storage: StoragePort
    auth: AuthPort
    users: UserPort
    clients: ClientPort
    cryptography: CryptographyPort
    stream: StreamPort
    conversations: ConversationPort
    connections: ConnectionPort
    team: TeamPort
    properties: PropertiesPort
    notifications: NotificationPort
    calling: CallingPort
    audio: AudioPort
    lifecycle_repository: LifecycleRepositoryPort
    protocol_schema: ProtocolSchemaPort
    view: ViewPort


class Container:
    """
    依赖装配

    基础设施 (事件总线、本地存储、单实例声明、连通性、崩溃上报) 按配置构造，
    领域协作者通过 Collaborators 显式注入；不存在全局注册表。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        platform: Optional[Platform] = None,
        local_store: Optional[BasePersistentCache] = None,
        claim_store: Optional[BaseClaimStore] = None,
        connectivity: Optional[ConnectivityPort] = None,
        crash_reporter: Optional[GlobalExceptionHandler] = None,
    ):
        self.settings = settings or default_settings

        # 初始化事件总线
        self.bus = EventBus()

        self.platform = platform or PlatformSignals(desktop=self.settings.DESKTOP)

        self.crash_reporter = crash_reporter or GlobalExceptionHandler(
            aggregation_minutes=self.settings.CRASH_AGGREGATION_MINUTES
        )
        self.bus.set_error_hook(lambda exc, ctx: self.crash_reporter.report(exc, ctx))

        self.connectivity = connectivity or ConnectivityService(
            base_url=self.settings.BACKEND_URL,
            path=self.settings.CONNECTIVITY_PATH,
            timeout=self.settings.CONNECTIVITY_TIMEOUT,
            base_delay=self.settings.CONNECTIVITY_BASE_DELAY,
            max_delay=self.settings.CONNECTIVITY_MAX_DELAY,
        )

        self.local_store = local_store or SQLitePersistentCache(self.settings.LOCAL_STORE_PATH)
        self.cache = CacheRepository(self.local_store)

        self.claim_store = claim_store or SQLiteClaimStore(
            self.settings.CLAIM_STORE_PATH, watch_interval=self.settings.CLAIM_WATCH_INTERVAL
        )
        self.coordinator = SingleInstanceCoordinator(self.claim_store)

        self.teardown = TeardownCoordinator(
            total_timeout=self.settings.TEARDOWN_TOTAL_TIMEOUT,
            default_task_timeout=self.settings.TEARDOWN_TASK_TIMEOUT,
        )
        self.lifecycle: Optional[LifecycleController] = None
        logger.info("Container infrastructure initialized")

    def build_lifecycle(self, collaborators: Collaborators) -> LifecycleController:
        if self.lifecycle is None:
            self.lifecycle = LifecycleController(
                platform=self.platform,
                bus=self.bus,
                connectivity=self.connectivity,
                auth=collaborators.auth,
                stream=collaborators.stream,
                users=collaborators.users,
                clients=collaborators.clients,
                storage=collaborators.storage,
                cache=self.cache,
                properties=collaborators.properties,
                login_route=self.settings.LOGIN_ROUTE,
                website_url=self.settings.WEBSITE_URL,
                desktop=self.settings.DESKTOP or None,
                default_log_level=logging.getLevelName(self.settings.LOG_LEVEL),
            )
            self.lifecycle.subscribe_to_events()
        return self.lifecycle

    def build_orchestrator(
        self,
        collaborators: Collaborators,
        instance_id: Optional[str] = None,
        telemetry: Optional[AppInitTelemetry] = None,
    ) -> InitializationOrchestrator:
        lifecycle = self.build_lifecycle(collaborators)
        classifier = FailureClassifier(self.platform, self.crash_reporter)
        failure_handler = FailureHandler(classifier, lifecycle, self.platform, coordinator=self.coordinator)
        return InitializationOrchestrator(
            platform=self.platform,
            bus=self.bus,
            storage=collaborators.storage,
            coordinator=self.coordinator,
            auth=collaborators.auth,
            users=collaborators.users,
            clients=collaborators.clients,
            cryptography=collaborators.cryptography,
            stream=collaborators.stream,
            conversations=collaborators.conversations,
            connections=collaborators.connections,
            team=collaborators.team,
            properties=collaborators.properties,
            notifications=collaborators.notifications,
            calling=collaborators.calling,
            audio=collaborators.audio,
            lifecycle_repository=collaborators.lifecycle_repository,
            protocol_schema=collaborators.protocol_schema,
            view=collaborators.view,
            connectivity=self.connectivity,
            lifecycle=lifecycle,
            failure_handler=failure_handler,
            teardown=self.teardown,
            task_runner=self.crash_reporter,
            telemetry=telemetry,
            instance_id=instance_id,
            app_version=self.settings.APP_VERSION,
            notification_check_seconds=self.settings.NOTIFICATION_CHECK_SECONDS,
        )

    async def shutdown(self) -> None:
        """释放基础设施资源"""
        if self.lifecycle is not None:
            self.lifecycle.unsubscribe_from_events()
        await self.claim_store.stop_watching()
        await self.bus.drain()
        await self.crash_reporter.stop()
        close = getattr(self.connectivity, "close", None)
        if close is not None:
            await close()
        logger.info("Container shutdown complete")
