# src/ai_toolbox/tasks/task_registry.py

from __future__ import annotations

import logging
import random
import string
import time
from collections.abc import Callable, Mapping
from typing import Any

from ..core.ports import TaskListener
from .task_models import Task, TaskStatus, normalize_patch

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_task_id(now: float | None = None) -> str:
    ts_ms = int((time.time() if now is None else now) * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"task-{ts_ms}-{suffix}"


class TaskRegistry:
    """
    In-memory registry of user-visible tasks.

    One instance per process (built in cli.bootstrap and held by AppState).
    Every mutation is synchronous and notifies subscribers in the same call stack
    with the full task list, in the order the mutations were issued.

    Late updates are expected: a job whose task was removed keeps calling
    update_task, which is a silent no-op for unknown ids.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._tasks: dict[str, Task] = {}
        self._listeners: list[TaskListener] = []
        self._clock = clock

    # ---- mutations ----

    def add_task(self, fields: Mapping[str, Any] | None = None, **kwargs: Any) -> str:
        """
        Create a task and return its id.

        Status is always stored as "pending"; the creator advances it with update_task.
        """
        data = {**(fields or {}), **kwargs}
        task_id = str(data.pop("id", "") or "") or new_task_id(self._clock())

        known, extra = normalize_patch(data)
        known.update(status=TaskStatus.PENDING, created_at=self._clock(), updated_at=None)

        task = Task(id=task_id, extra=extra, **known)
        self._tasks[task_id] = task
        logger.debug("Task added id=%s type=%s", task_id, task.type)
        self._notify()
        return task_id

    def update_task(self, task_id: str, patch: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        """Merge a patch. An unknown status raises ValueError and leaves the task unchanged."""
        current = self._tasks.get(task_id)
        if current is None:
            logger.debug("update_task ignored for unknown id=%s", task_id)
            return

        updated = current.merged({**(patch or {}), **kwargs}, now=self._clock())
        self._tasks[task_id] = updated
        if updated.status != current.status:
            logger.info("Task %s -> %s", task_id, updated.status.value)
        self._notify()

    def remove_task(self, task_id: str) -> None:
        if self._tasks.pop(task_id, None) is None:
            return
        logger.info("Task removed id=%s", task_id)
        self._notify()

    # ---- reads ----

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_all_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def list_tasks(self, *, newest_first: bool = True) -> list[Task]:
        """Task list view order (by creation time)."""
        return sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=newest_first)

    def count_tasks(self) -> int:
        return len(self._tasks)

    # ---- subscription ----

    def subscribe(self, listener: TaskListener) -> Callable[[], None]:
        """
        Register a listener for the full task list.

        Returns an unsubscribe callable; calling it more than once is harmless.
        """
        self._listeners.append(listener)
        active = True

        def unsubscribe() -> None:
            nonlocal active
            if not active:
                return
            active = False
            self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.get_all_tasks()
        # Copy: listeners may unsubscribe while being notified.
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Task listener failed: %r", listener)
