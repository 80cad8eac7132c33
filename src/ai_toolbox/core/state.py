# src/ai_toolbox/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..jobs.job_supervisor import JobSupervisor
from ..tabs.tab_cache import TabStateCache
from ..tasks.task_registry import TaskRegistry
from .ports import JobService

if TYPE_CHECKING:
    from ..screens.session import ScreenSession


@dataclass
class AppState:
    """
    Process-wide services, built once at startup and passed to every consumer.

    job_service / supervisor are None when no provider is configured; the task
    registry and tab cache are always available.
    """

    settings: Any
    tasks: TaskRegistry
    tabs: TabStateCache
    job_service: JobService | None = None
    supervisor: JobSupervisor | None = None

    # Open tabs of the console front-end (tab_id -> attached session).
    sessions: dict[str, ScreenSession] = field(default_factory=dict)
