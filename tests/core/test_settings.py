"""Tests for CadenceSettings and the cached accessor."""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from cadence.core.settings import (
    CadenceSettings,
    TimerBackendKind,
    clear_settings_cache,
    get_settings,
)


class TestDefaults:
    def test_defaults(self):
        settings = CadenceSettings()
        assert settings.database_path == Path("data/cadence.db")
        assert settings.timer_backend is TimerBackendKind.THREAD
        assert settings.default_timezone == "UTC"
        assert settings.status_time_format == "%d.%m.%y %H:%M:%S"
        assert settings.default_actor == "anonymous"
        assert settings.recovery_page_size == 100
        assert settings.log_format == "json"


class TestEnvironment:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CADENCE_TIMER_BACKEND", "apscheduler")
        monkeypatch.setenv("CADENCE_APSCHEDULER_MAX_WORKERS", "4")
        monkeypatch.setenv("CADENCE_DEFAULT_TIMEZONE", "Europe/Berlin")

        settings = CadenceSettings()

        assert settings.timer_backend is TimerBackendKind.APSCHEDULER
        assert settings.apscheduler_max_workers == 4
        assert settings.default_timezone == "Europe/Berlin"

    def test_unknown_timezone_rejected(self, monkeypatch):
        monkeypatch.setenv("CADENCE_DEFAULT_TIMEZONE", "Mars/Olympus")
        with pytest.raises(PydanticValidationError, match="Unknown timezone"):
            CadenceSettings()

    def test_log_format_normalized(self):
        assert CadenceSettings(log_format="CONSOLE").log_format == "console"

    def test_unknown_log_format_rejected(self):
        with pytest.raises(PydanticValidationError):
            CadenceSettings(log_format="xml")

    def test_page_size_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            CadenceSettings(recovery_page_size=0)


class TestGetSettings:
    def test_cached(self):
        assert get_settings() is get_settings()

    def test_cache_clear_rereads_environment(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("CADENCE_DEFAULT_ACTOR", "system")
        assert get_settings() is first

        clear_settings_cache()
        assert get_settings().default_actor == "system"
