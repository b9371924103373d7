"""
Prometheus 指标测试
"""
from core.helpers.metrics import (
    INIT_PROGRESS_PERCENT,
    REGISTRY,
    generate_metrics,
    set_health,
    set_ready,
)


class TestMetrics:

    def test_ready_and_health(self):
        set_ready(True)
        set_health(False)
        try:
            assert REGISTRY.get_sample_value("service_ready_status") == 1
            assert REGISTRY.get_sample_value("service_health_status") == 0
        finally:
            set_ready(False)
            set_health(True)

    def test_generate_metrics_exposes_init_progress(self):
        INIT_PROGRESS_PERCENT.set(25)
        data, content_type = generate_metrics()
        assert b"app_init_progress_percent 25.0" in data
        assert content_type.startswith("text/plain")
