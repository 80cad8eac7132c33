# src/ai_toolbox/tasks/task_models.py

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Notes:
    - "pending" is what add_task stores; creators advance to "running" right away.
    - completed / failed / cancelled are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    @classmethod
    def coerce(cls, raw: Any) -> TaskStatus:
        if isinstance(raw, TaskStatus):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown task status: {raw!r}") from None


# External (camelCase) names accepted in patches.
FIELD_ALIASES: dict[str, str] = {
    "tabId": "tab_id",
    "resultUrl": "result_url",
    "resultBase64": "result_base64",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


@dataclass(slots=True, frozen=True)
class Task:
    id: str
    type: str = ""
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    tab_id: str | None = None

    result_url: str | None = None
    result_base64: str | None = None
    error: str | None = None

    created_at: float = 0.0
    updated_at: float | None = None

    # Patch keys that are not known fields end up here.
    extra: dict[str, Any] = field(default_factory=dict)

    def merged(self, patch: Mapping[str, Any], *, now: float | None = None) -> Task:
        """Return a copy with `patch` applied and updated_at refreshed."""
        known, extra = normalize_patch(patch)
        known.pop("id", None)
        if extra:
            known["extra"] = {**self.extra, **extra}
        known["updated_at"] = time.time() if now is None else now
        return replace(self, **known)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        out = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "progress": self.progress,
            "tabId": self.tab_id,
            "resultUrl": self.result_url,
            "resultBase64": self.result_base64,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        out.update(self.extra)
        return out


_TASK_FIELDS = frozenset(f.name for f in fields(Task)) - {"extra"}


def normalize_patch(patch: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Split a patch into (known task fields, everything else).

    camelCase aliases are mapped to field names, status is coerced to TaskStatus
    (ValueError for unknown values) and progress to int.
    """
    known: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in patch.items():
        name = FIELD_ALIASES.get(key, key)
        if name not in _TASK_FIELDS:
            extra[key] = value
            continue
        if name == "status":
            value = TaskStatus.coerce(value)
        elif name == "progress":
            value = int(value or 0)
        known[name] = value
    return known, extra


def format_duration(task: Task, now: float | None = None) -> str:
    """m:ss since creation; running tasks count up to now, finished ones to updated_at."""
    if not task.created_at:
        return "-"
    if task.status == TaskStatus.RUNNING:
        end = time.time() if now is None else now
    elif task.updated_at:
        end = task.updated_at
    else:
        return "-"
    seconds = max(0, int(end - task.created_at))
    return f"{seconds // 60}:{seconds % 60:02d}"
