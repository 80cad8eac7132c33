# src/ai_toolbox/jobs/job_supervisor.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..tasks.task_models import Task
from ..tasks.task_registry import TaskRegistry
from .extractors import STATUS_EXTRACTORS, Decoder, Extractor, decode_passthrough
from .job_models import SUPERSEDED_REASON, CancellationToken, ChainOutcome, JobOutcome
from .job_poller import ChainSpec, IterationCallback, JobPoller
from .single_request import run_single_request

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Running:
    runner: asyncio.Task[Any]
    token: CancellationToken


class JobSupervisor:
    """
    Runs polling machines in the background, one per task.

    Each machine gets its own CancellationToken. Removing a task from the
    registry cancels the token of its machine: local polling stops, the remote
    job is left alone.
    """

    def __init__(self, registry: TaskRegistry, poller: JobPoller) -> None:
        self.registry = registry
        self.poller = poller
        self._running: dict[str, _Running] = {}
        self._unsubscribe = registry.subscribe(self._on_tasks_changed)

    # ---- start ----

    def start_job(
        self,
        task_id: str,
        payload: dict[str, Any],
        *,
        decoder: Decoder = decode_passthrough,
    ) -> asyncio.Task[JobOutcome]:
        token = CancellationToken()
        coro = self.poller.run_job(task_id, payload, decoder=decoder, token=token)
        return self._spawn(task_id, coro, token)

    def start_chain(
        self,
        task_id: str,
        spec: ChainSpec,
        *,
        on_iteration: IterationCallback | None = None,
    ) -> asyncio.Task[ChainOutcome]:
        token = CancellationToken()
        coro = self.poller.run_chain(task_id, spec, token=token, on_iteration=on_iteration)
        return self._spawn(task_id, coro, token)

    def start_request(
        self,
        task_id: str,
        call: Callable[[], Awaitable[Any]],
        *,
        extractors: Iterable[Extractor] = STATUS_EXTRACTORS,
        decoder: Decoder = decode_passthrough,
    ) -> asyncio.Task[JobOutcome]:
        """Single-shot call (no polling) tracked like a job: cancellable, replaced by a newer start."""
        token = CancellationToken()
        coro = run_single_request(
            self.registry, task_id, call, extractors=extractors, decoder=decoder, token=token
        )
        return self._spawn(task_id, coro, token)

    def _spawn(self, task_id: str, coro: Any, token: CancellationToken) -> asyncio.Task[Any]:
        previous = self._running.get(task_id)
        if previous is not None:
            logger.warning("Task %s already has a running job; cancelling the old one", task_id)
            previous.token.cancel(SUPERSEDED_REASON)

        runner = asyncio.create_task(self._run(task_id, coro, token), name=f"job:{task_id}")
        self._running[task_id] = _Running(runner=runner, token=token)

        def _done(fut: asyncio.Task[Any]) -> None:
            # Covers runners cancelled before their first step.
            self._forget(task_id, token)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error("Job runner for task %s crashed", task_id, exc_info=exc)

        runner.add_done_callback(_done)
        return runner

    async def _run(self, task_id: str, coro: Any, token: CancellationToken) -> Any:
        # Untrack before the runner completes, so whoever awaits it sees it gone.
        try:
            return await coro
        finally:
            self._forget(task_id, token)

    def _forget(self, task_id: str, token: CancellationToken) -> None:
        entry = self._running.get(task_id)
        if entry is not None and entry.token is token:
            del self._running[task_id]

    # ---- control ----

    def cancel(self, task_id: str, reason: str = "cancelled") -> bool:
        entry = self._running.get(task_id)
        if entry is None:
            return False
        entry.token.cancel(reason)
        logger.info("Local tracking cancelled for task %s (%s)", task_id, reason)
        return True

    def active_task_ids(self) -> list[str]:
        return list(self._running)

    async def wait(self, task_id: str) -> Any | None:
        entry = self._running.get(task_id)
        if entry is None:
            return None
        return await entry.runner

    async def shutdown(self) -> None:
        """Cancel every running machine and wait for them to stop."""
        self._unsubscribe()
        entries = list(self._running.values())
        for entry in entries:
            entry.token.cancel("shutdown")
        for entry in entries:
            with contextlib.suppress(asyncio.CancelledError):
                await entry.runner

    # ---- registry listener ----

    def _on_tasks_changed(self, tasks: list[Task]) -> None:
        if not self._running:
            return
        present = {t.id for t in tasks}
        for task_id in [tid for tid in self._running if tid not in present]:
            self.cancel(task_id, "task removed")
