# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from ai_toolbox.core.state import AppState
from ai_toolbox.tabs.tab_cache import TabStateCache
from ai_toolbox.tasks.task_registry import TaskRegistry

from .fakes import FakeClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the CLI.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the developer's .env.
    """
    return SimpleNamespace(
        app_name="ai-toolbox-test",
        log_level="DEBUG",
        data_dir=tmp_path / "data",
        console_enabled=False,
        runpod_endpoint="",
        runpod_api_key=None,
        job_service_configured=False,
        poll_interval_seconds=5.0,
        job_timeout_seconds=600.0,
        http_timeout_seconds=5.0,
    )


@pytest.fixture()
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture()
def tabs() -> TabStateCache:
    return TabStateCache()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state(settings: SimpleNamespace, registry: TaskRegistry, tabs: TabStateCache) -> AppState:
    """AppState without a job service (run/chain disabled)."""
    return AppState(settings=settings, tasks=registry, tabs=tabs)
