from pathlib import Path

from report_engine.settings import BUNDLED_CATALOG_DIR, EngineSettings, validate_timezone

ENV_KEYS = (
    "REPORT_DATABASE_URL", "REPORT_CATALOG_DIR", "CACHE_ENABLED", "EXECUTION_TIMEOUT_SECONDS",
    "SCHEDULER_RETRY_ATTEMPTS", "SCHEDULER_TIMEZONE", "LOG_LEVEL",
)


def _clear(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    settings = EngineSettings.from_env()
    assert settings.database_url == "sqlite:///./reports.db"
    assert settings.catalog_dir == BUNDLED_CATALOG_DIR
    assert settings.cache_enabled is True
    assert settings.execution_timeout == 30.0
    assert settings.scheduler_retry_attempts == 2
    assert settings.scheduler_timezone == "UTC"


def test_environment_overrides(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("REPORT_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("REPORT_CATALOG_DIR", str(tmp_path))
    monkeypatch.setenv("CACHE_ENABLED", "false")
    monkeypatch.setenv("EXECUTION_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("SCHEDULER_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("SCHEDULER_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = EngineSettings.from_env()

    assert settings.database_url == "sqlite://"
    assert settings.catalog_dir == Path(tmp_path)
    assert settings.cache_enabled is False
    assert settings.execution_timeout is None
    assert settings.scheduler_retry_attempts == 5
    assert settings.scheduler_timezone == "Europe/Berlin"
    assert settings.log_level == "DEBUG"


def test_invalid_timezone_falls_back_to_utc():
    assert validate_timezone("Not/AZone") == "UTC"
    assert validate_timezone("Asia/Tokyo") == "Asia/Tokyo"
