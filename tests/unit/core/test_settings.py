"""
Unit tests for application settings.
Tests Pydantic validation and default values.
"""
from core.config import Settings, get_settings
from version import VERSION


class TestSettingsLogic:

    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.APP_VERSION == VERSION
        assert s.LOGIN_ROUTE == "/auth/"
        assert s.CONNECTIVITY_PATH == "/access"
        assert s.DESKTOP is False
        assert s.LOCAL_STORE_PATH.name == "local_store.db"

    def test_env_override(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("APP_ENV", "testing")
        monkeypatch.setenv("NOTIFICATION_CHECK_SECONDS", "2.5")
        monkeypatch.setenv("DESKTOP", "true")

        s = Settings(_env_file=None)
        assert s.APP_ENV == "testing"
        assert s.NOTIFICATION_CHECK_SECONDS == 2.5
        assert s.DESKTOP is True

    def test_log_level_is_normalized(self):
        assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"
        assert Settings(_env_file=None, LOG_LEVEL="verbose").LOG_LEVEL == "INFO"

    def test_login_route_is_normalized(self):
        assert Settings(_env_file=None, LOGIN_ROUTE="auth").LOGIN_ROUTE == "/auth/"

    def test_backend_url_trailing_slash_is_stripped(self):
        s = Settings(_env_file=None, BACKEND_URL="https://backend.test/")
        assert s.BACKEND_URL == "https://backend.test"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
