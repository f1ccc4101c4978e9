"""Pytest configuration: project root on sys.path plus shared fixtures."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in sys.path for proper imports with pytest-xdist
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from surge.config import reset_settings  # noqa: E402

SURGE_ENV = (
    "SURGE_BASE_URL",
    "SURGE_MAX_VUS",
    "SURGE_TICK_SECONDS",
    "SURGE_REQUEST_TIMEOUT",
    "SURGE_LOG_LEVEL",
    "SURGE_SUMMARY_PATH",
)


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Each test sees an empty SURGE_* environment and fresh settings."""
    for name in SURGE_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()
