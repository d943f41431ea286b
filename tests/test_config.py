import pytest

from config import Settings, load_settings


ENV_KEYS = (
    "POD_NAMESPACE",
    "METRICS_HOST",
    "METRICS_PORT",
    "LOG_LEVEL",
    "WATCH_TIMEOUT_SECONDS",
    "LIST_PAGE_SIZE",
    "BACKOFF_INITIAL_SECONDS",
    "BACKOFF_MAX_SECONDS",
    "SHUTDOWN_GRACE_SECONDS",
)


class TestLoadSettings:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for key in ENV_KEYS:
            monkeypatch.delenv(key, raising=False)

    def test_defaults(self):
        """Test defaults: namespace 'default' and port 8080"""
        settings = load_settings(dotenv=False)
        assert settings == Settings()
        assert settings.namespace == "default"
        assert settings.metrics_port == 8080

    def test_overrides(self, monkeypatch):
        """Test values are read from the environment"""
        monkeypatch.setenv("POD_NAMESPACE", " demo ")
        monkeypatch.setenv("METRICS_PORT", "9100")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("BACKOFF_MAX_SECONDS", "60")

        settings = load_settings(dotenv=False)

        assert settings.namespace == "demo"
        assert settings.metrics_port == 9100
        assert settings.log_level == "DEBUG"
        assert settings.backoff_max_seconds == 60.0

    @pytest.mark.parametrize("key,value", [
        ("METRICS_PORT", "http"),
        ("METRICS_PORT", "70000"),
        ("LIST_PAGE_SIZE", "0"),
        ("LOG_LEVEL", "verbose"),
        ("BACKOFF_INITIAL_SECONDS", "-1"),
        ("POD_NAMESPACE", "  "),
    ])
    def test_invalid_values(self, monkeypatch, key, value):
        """Test unusable values raise ValueError"""
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            load_settings(dotenv=False)

    def test_backoff_max_below_initial(self, monkeypatch):
        """Test the backoff cap must not be below the first delay"""
        monkeypatch.setenv("BACKOFF_INITIAL_SECONDS", "10")
        monkeypatch.setenv("BACKOFF_MAX_SECONDS", "5")
        with pytest.raises(ValueError):
            load_settings(dotenv=False)
