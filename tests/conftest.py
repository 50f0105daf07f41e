"""
Shared pytest fixtures and configuration for cadence tests.

This module provides:
- Settings isolation (the cached settings object is cleared around each test)
- A ``settings`` fixture pointing the SQLite store at a temporary directory
- structlog reset so tests that configure logging do not leak into others
"""

import os
import sys
from pathlib import Path

import pytest
import structlog

# Ensure cadence package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cadence.core.settings import CadenceSettings, clear_settings_cache


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    """Start every test with default settings and an empty cache."""
    for key in list(os.environ):
        if key.startswith("CADENCE_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def settings(tmp_path) -> CadenceSettings:
    """Settings with the store in a temp dir and UTC status timestamps."""
    return CadenceSettings(
        database_path=tmp_path / "cadence.db",
        default_timezone="UTC",
        recovery_page_size=100,
    )
