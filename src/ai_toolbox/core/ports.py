# src/ai_toolbox/core/ports.py

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps job providers swappable and lets tests drive the poller
with scripted services and a fake clock.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

if TYPE_CHECKING:
    from ..tasks.task_models import Task

TaskListener = Callable[[list["Task"]], None]
# Receives the full task list after every registry mutation.

Clock = Callable[[], float]
# Monotonic seconds; used for timeout accounting.

Sleeper = Callable[[float], Awaitable[None]]


class JobService(Protocol):
    """
    Submit-then-poll job provider (RunPod-style).

    submit() returns the provider's job id.
    status() returns the raw status document: {"status": ..., "output"?: ..., "error"?: ...}.
    Transport problems are raised as exceptions; the poller treats them as transient.
    """

    def submit(self, payload: dict[str, Any]) -> Awaitable[str]: ...

    def status(self, job_id: str) -> Awaitable[dict[str, Any]]: ...


class TaskSink(Protocol):
    """The part of the task registry a job needs to report progress."""

    def update_task(self, task_id: str, patch: dict[str, Any] | None = None, **kwargs: Any) -> None: ...

    def get_task(self, task_id: str) -> Any | None: ...
