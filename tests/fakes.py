# tests/fakes.py

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ai_toolbox.core.ports import JobService
from ai_toolbox.tasks.task_models import Task

StatusStep = dict[str, Any] | Exception


class FakeClock:
    """
    Deterministic monotonic clock + sleeper for the poller.

    sleep() advances the clock instead of waiting, then yields once to the loop.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedJobService(JobService):
    """
    Fake JobService.

    Each submit() creates job "job-<n>" bound to the n-th script (the last script is
    reused if there are more submits than scripts). status() walks the job's script;
    the last step repeats forever. Exceptions in a script are raised instead of returned.
    """

    def __init__(
        self,
        *scripts: list[StatusStep],
        submit_error: Exception | None = None,
        job_id: str | None = None,
    ) -> None:
        self.scripts = [list(s) for s in scripts] or [[{"status": "IN_PROGRESS"}]]
        self.submit_error = submit_error
        self.fixed_job_id = job_id
        self.submitted: list[dict[str, Any]] = []
        self.status_calls: list[str] = []
        self.on_status: Callable[[str, int], None] | None = None
        self._positions: dict[str, int] = {}
        self._job_scripts: dict[str, list[StatusStep]] = {}

    async def submit(self, payload: dict[str, Any]) -> str:
        self.submitted.append(payload)
        if self.submit_error is not None:
            raise self.submit_error
        if self.fixed_job_id is not None:
            job_id = self.fixed_job_id
        else:
            job_id = f"job-{len(self.submitted)}"
        index = min(len(self.submitted), len(self.scripts)) - 1
        self._job_scripts[job_id] = self.scripts[index]
        self._positions[job_id] = 0
        return job_id

    async def status(self, job_id: str) -> dict[str, Any]:
        self.status_calls.append(job_id)
        script = self._job_scripts.get(job_id) or self.scripts[0]
        pos = self._positions.get(job_id, 0)
        self._positions[job_id] = pos + 1
        if self.on_status is not None:
            self.on_status(job_id, len(self.status_calls))
        step = script[min(pos, len(script) - 1)]
        if isinstance(step, Exception):
            raise step
        return step


class SyncJobService(ScriptedJobService):
    """ScriptedJobService that also answers /runsync with a fixed document."""

    def __init__(self, response: dict[str, Any], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.response = response
        self.sync_payloads: list[dict[str, Any]] = []

    async def run_sync(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.sync_payloads.append(payload)
        return self.response


@dataclass(slots=True)
class TaskEvents:
    """Registry listener that records every notification."""

    snapshots: list[list[Task]] = field(default_factory=list)

    def __call__(self, tasks: list[Task]) -> None:
        self.snapshots.append(list(tasks))

    def history_of(self, task_id: str) -> list[Task]:
        out: list[Task] = []
        for snap in self.snapshots:
            for t in snap:
                if t.id == task_id:
                    out.append(t)
        return out


def in_progress(n: int) -> list[StatusStep]:
    return [{"status": "IN_PROGRESS"} for _ in range(n)]


def completed(output: Any) -> dict[str, Any]:
    return {"status": "COMPLETED", "output": output}
