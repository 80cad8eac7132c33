# src/ai_toolbox/jobs/job_models.py

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class JobState(StrEnum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobState.SUBMITTING, JobState.POLLING)


class RemoteStatus(StrEnum):
    """Statuses reported by the job service. Anything else means "still running"."""

    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Reason used when a newer job takes over the same task.
SUPERSEDED_REASON = "replaced"


class CancellationToken:
    """
    Local stop signal for one polling machine.

    Cancelling stops local tracking only; the remote job keeps running.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def superseded(self) -> bool:
        """A newer job owns the task now; this machine must not touch it again."""
        return self.cancelled and self.reason == SUPERSEDED_REASON

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True, frozen=True)
class JobResult:
    """
    Decoded job output.

    raw:    string found in the status document
    url:    what the task exposes as result_url
    base64: clean base64 when the output is inline data, else None
    """

    raw: str
    url: str
    base64: str | None = None

    @property
    def next_input(self) -> str:
        """Input for the next chained iteration."""
        return self.base64 if self.base64 is not None else self.url


@dataclass(slots=True)
class JobOutcome:
    state: JobState
    job_id: str | None = None
    result: JobResult | None = None
    error: str | None = None
    history: list[JobState] = field(default_factory=list)
    polls: int = 0
    # Status document that could not be decoded, kept for debugging.
    raw_response: Any = None

    @property
    def ok(self) -> bool:
        return self.state == JobState.COMPLETED


@dataclass(slots=True, frozen=True)
class IterationResult:
    number: int
    result: JobResult

    def to_dict(self) -> dict[str, Any]:
        return {"number": self.number, "dataUrl": self.result.url, "base64": self.result.base64}


@dataclass(slots=True)
class ChainOutcome:
    state: JobState
    iterations: int
    results: list[IterationResult] = field(default_factory=list)
    error: str | None = None
    # Outcome of the last iteration that ran (failed one, if any).
    last: JobOutcome | None = None

    @property
    def ok(self) -> bool:
        return self.state == JobState.COMPLETED

    @property
    def final(self) -> JobResult | None:
        return self.results[-1].result if self.results else None
