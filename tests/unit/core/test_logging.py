"""
日志模块测试：脱敏、上下文注入、StandardLogger 包装
"""
import json
import logging

from core.context import init_state_var, instance_id_var
from core.logging import (
    JsonFormatter,
    _ContextFilter,
    _redact,
    correlation_context,
    get_logger,
    setup_logging,
    short_id,
)


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("core.bootstrap", logging.INFO, __file__, 1, message, None, None)


class TestRedaction:

    def test_masks_tokens(self):
        assert _redact("access_token=abc123 ok") == "access_token=*** ok"
        assert _redact('{"password": "hunter2"}') == '{"password": "***"}'

    def test_leaves_plain_text(self):
        assert _redact("Loading conversations") == "Loading conversations"


class TestContextFilter:

    def test_injects_instance_and_state(self):
        token_a = instance_id_var.set("0123456789abcdef")
        token_b = init_state_var.set("loading_token")
        try:
            record = _record("hello")
            with correlation_context("trace-1"):
                _ContextFilter().filter(record)
        finally:
            instance_id_var.reset(token_a)
            init_state_var.reset(token_b)

        assert record.correlation_id == "trace-1"
        assert record.instance_id == "...89abcdef"
        assert record.init_state == "loading_token"

    def test_json_formatter(self):
        record = _record("token=secret")
        _ContextFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "token=***"
        assert payload["logger"] == "core.bootstrap"


class TestStandardLogger:

    def test_get_logger_is_cached(self):
        assert get_logger("core.lifecycle") is get_logger("core.lifecycle")

    def test_bind_merges_context(self, caplog):
        logger = get_logger("core.test").bind(stage="loading_token")
        with caplog.at_level(logging.INFO, logger="core.test"):
            logger.info("stage entered", attempt=1)

        record = caplog.records[-1]
        assert record.stage == "loading_token"
        assert record.attempt == 1

    def test_short_id(self):
        assert short_id("abc") == "abc"
        assert short_id("0123456789") == "...456789"


class TestSetupLogging:

    def test_configures_root_handlers(self, tmp_path, monkeypatch):
        from core.config import settings

        monkeypatch.setattr(settings, "LOG_DIR", tmp_path)
        monkeypatch.setattr(settings, "LOG_LEVEL_OVERRIDES", "core.bootstrap=DEBUG")
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        try:
            setup_logging(log_to_file=True)
            assert (tmp_path / "app.log").exists()
            assert logging.getLogger("core.bootstrap").level == logging.DEBUG
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved[0]:
                root.addHandler(handler)
            root.setLevel(saved[1])
            logging.getLogger("core.bootstrap").setLevel(logging.NOTSET)
