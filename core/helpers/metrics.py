from typing import Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


# 每个进程一个独立 registry，不污染 prometheus_client 的默认全局 registry
REGISTRY = CollectorRegistry()


# 基础健康/就绪指标
SERVICE_HEALTH = Gauge(
    "service_health_status",
    "Service health status (1 healthy, 0 unhealthy)",
    registry=REGISTRY,
)
SERVICE_READY = Gauge(
    "service_ready_status",
    "Service readiness status (1 ready, 0 not ready)",
    registry=REGISTRY,
)

SERVICE_HEALTH.set(1)
SERVICE_READY.set(0)


# 启动流程指标
INIT_PROGRESS_PERCENT = Gauge(
    "app_init_progress_percent",
    "Last reported app init progress percent",
    registry=REGISTRY,
)
INIT_STAGE_SECONDS = Histogram(
    "app_init_stage_seconds",
    "App init stage duration seconds",
    ["stage"],
    registry=REGISTRY,
)
INIT_RUNS_TOTAL = Counter(
    "app_init_runs_total",
    "App init runs by final state",
    ["result"],
    registry=REGISTRY,
)
INIT_STATISTICS = Gauge(
    "app_init_statistic",
    "Bucketed app init statistics (conversations, notifications, clients)",
    ["name"],
    registry=REGISTRY,
)

# 故障恢复
RECOVERY_ACTIONS_TOTAL = Counter(
    "app_recovery_actions_total",
    "Recovery actions chosen after init failures",
    ["action", "reason"],
    registry=REGISTRY,
)

# 登出与单实例
SIGN_OUT_TOTAL = Counter(
    "app_sign_out_total",
    "Sign-outs by reason",
    ["reason"],
    registry=REGISTRY,
)
INSTANCE_CLAIMS_TOTAL = Counter(
    "app_instance_claims_total",
    "Single-instance registration attempts",
    ["result"],
    registry=REGISTRY,
)

# 崩溃上报
CRASH_REPORTS_TOTAL = Counter(
    "app_crash_reports_total",
    "Errors forwarded to the crash reporter",
    ["status"],
    registry=REGISTRY,
)


def set_ready(is_ready: bool) -> None:
    SERVICE_READY.set(1 if is_ready else 0)


def set_health(is_healthy: bool) -> None:
    SERVICE_HEALTH.set(1 if is_healthy else 0)


def generate_metrics() -> Tuple[bytes, str]:
    data = generate_latest(REGISTRY)
    return data, CONTENT_TYPE_LATEST
