# src/ai_toolbox/screens/session.py

"""
Screen session: the glue between one tab's view and the shared stores.

A view is created and destroyed as the user switches tabs. The session lets it:
- rebuild what it shows from the tab cache + task registry (restore),
- follow its task while mounted (attach/detach),
- write durable fields back to the tab cache (save/reset/close).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from ..tabs.tab_cache import TabStateCache
from ..tasks.task_models import Task, TaskStatus
from ..tasks.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

DEFAULT_TASK_ERROR = "Task failed"

# Tab blob keys shared by every screen.
KEY_TASK_ID = "taskId"
KEY_RESULT_URL = "resultUrl"

ViewListener = Callable[["TabView"], None]


@dataclass(slots=True, frozen=True)
class TabView:
    task_id: str | None = None
    is_processing: bool = False
    result_url: str | None = None
    error: str | None = None
    progress: int = 0


def project_view(blob: Mapping[str, Any] | None, task: Task | None, current: TabView | None = None) -> TabView:
    """
    What a tab should show, given its cached blob and its task (if still registered).

    Pure function: no store access.
    """
    view = current or TabView()
    blob = blob or {}

    if KEY_TASK_ID in blob:
        view = replace(view, task_id=blob[KEY_TASK_ID])
    if blob.get(KEY_RESULT_URL):
        view = replace(view, result_url=blob[KEY_RESULT_URL])

    if task is None:
        return view

    if task.status == TaskStatus.RUNNING:
        return replace(view, is_processing=True, progress=task.progress)
    if task.status == TaskStatus.COMPLETED and task.result_url:
        return replace(view, is_processing=False, result_url=task.result_url, error=None, progress=100)
    if task.status == TaskStatus.FAILED:
        return replace(view, is_processing=False, error=task.error or DEFAULT_TASK_ERROR)
    if task.status != TaskStatus.PENDING:
        return replace(view, is_processing=False)
    return view


class ScreenSession:
    def __init__(
        self,
        tab_id: str,
        registry: TaskRegistry,
        tabs: TabStateCache,
        *,
        on_change: ViewListener | None = None,
    ) -> None:
        self.tab_id = tab_id
        self.registry = registry
        self.tabs = tabs
        self.on_change = on_change
        self.view = TabView()
        self._unsubscribe: Callable[[], None] | None = None

    # ---- lifecycle ----

    def restore(self) -> TabView:
        blob = self.tabs.get_tab_state(self.tab_id)
        if blob is None:
            self.view = TabView()
            return self.view

        task_id = blob.get(KEY_TASK_ID)
        task = self.registry.get_task(task_id) if task_id else None
        self.view = project_view(blob, task)
        logger.debug("Tab %s restored (task=%s processing=%s)", self.tab_id, task_id, self.view.is_processing)
        return self.view

    def attach(self) -> TabView:
        """Mount: restore, then follow the registry until detach()."""
        view = self.restore()
        if self._unsubscribe is None:
            self._unsubscribe = self.registry.subscribe(self._on_tasks)
        return view

    def detach(self) -> None:
        """Unmount. The tab state and any running job are left alone."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def close(self) -> None:
        """Tab closed by the user."""
        self.detach()
        self.tabs.clear_tab_state(self.tab_id)
        self.view = TabView()

    # ---- state ----

    def state(self) -> dict[str, Any]:
        return self.tabs.get_tab_state(self.tab_id) or {}

    def save(self, **fields: Any) -> dict[str, Any]:
        return self.tabs.update_tab_state(self.tab_id, fields)

    def reset(self, defaults: Mapping[str, Any]) -> None:
        """Clear the form: replace the whole blob with `defaults`."""
        self.tabs.set_tab_state(self.tab_id, {**defaults, KEY_TASK_ID: None})
        self.view = TabView()

    def start_task(self, type_: str, title: str, description: str = "") -> str:
        task_id = self.registry.add_task(
            type=type_, title=title, description=description, tab_id=self.tab_id
        )
        self.registry.update_task(task_id, status=TaskStatus.RUNNING, progress=0)
        self.tabs.update_tab_state(self.tab_id, {KEY_TASK_ID: task_id})
        self.view = TabView(task_id=task_id, is_processing=True)
        return task_id

    # ---- registry listener ----

    def _on_tasks(self, tasks: list[Task]) -> None:
        blob = self.tabs.get_tab_state(self.tab_id) or {}
        task_id = blob.get(KEY_TASK_ID)
        if not task_id:
            return
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            return

        if (
            task.status == TaskStatus.COMPLETED
            and task.result_url
            and blob.get(KEY_RESULT_URL) != task.result_url
        ):
            self.tabs.update_tab_state(self.tab_id, {KEY_RESULT_URL: task.result_url})

        view = project_view(blob, task, self.view)
        if view != self.view:
            self.view = view
            if self.on_change is not None:
                self.on_change(view)
