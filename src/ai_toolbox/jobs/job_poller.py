# src/ai_toolbox/jobs/job_poller.py

"""
Job polling state machine.

Drives one submit-then-poll job to a terminal state:

    SUBMITTING -> POLLING -> COMPLETED | FAILED | CANCELLED | TIMED_OUT

and reports progress into the task registry. Chained mode runs the same cycle
N times in sequence, feeding each iteration's output into the next payload.

Outcomes are returned (and written to the task), never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..core.ports import Clock, JobService, Sleeper, TaskSink
from ..tasks.task_models import TaskStatus
from .extractors import STATUS_EXTRACTORS, Decoder, Extractor, decode_passthrough, extract_result
from .job_models import (
    CancellationToken,
    ChainOutcome,
    IterationResult,
    JobOutcome,
    JobResult,
    JobState,
    RemoteStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 10 * 60.0

DEFAULT_FAILED_MESSAGE = "Job failed"
REMOTE_CANCELLED_MESSAGE = "Job was cancelled by the service"
NO_JOB_ID_MESSAGE = "Job service returned no job id"
RESULT_NOT_FOUND_MESSAGE = "Result not found in the job response"
LOCAL_CANCELLED_MESSAGE = "Cancelled"

# Progress checkpoints inside a job's band (percent of the band).
PROGRESS_SUBMITTED = 10
PROGRESS_FIRST_POLL = 50
PROGRESS_POLL_STEP = 5
PROGRESS_POLL_CAP = 90
PROGRESS_RESULT = 95

# Chained mode: the first 20% is left for pre-processing, the last 10% for saving.
CHAIN_BAND_START = 20.0
CHAIN_BAND_SPAN = 70.0

Band = tuple[float, float]
IterationCallback = Callable[[IterationResult, list[IterationResult]], None]


@dataclass(slots=True)
class ChainSpec:
    """
    Chained job: `iterations` sequential jobs, iteration k+1 built from iteration k's output.

    build_payload(current_input, iteration_number) -> payload
    """

    initial_input: str
    build_payload: Callable[[str, int], dict[str, Any]]
    iterations: int = 1
    decoder: Decoder = decode_passthrough


def timeout_message(timeout_seconds: float) -> str:
    minutes = timeout_seconds / 60.0
    return f"Timed out waiting for the job result ({minutes:g} min)"


def cancel_message(token: CancellationToken) -> str:
    reason = token.reason or ""
    if not reason or reason == "cancelled":
        return LOCAL_CANCELLED_MESSAGE
    return f"{LOCAL_CANCELLED_MESSAGE}: {reason}"


def chain_band(iteration: int, total: int) -> Band:
    """Progress band of a 1-based iteration out of `total`."""
    step = CHAIN_BAND_SPAN / total
    return CHAIN_BAND_START + (iteration - 1) * step, CHAIN_BAND_START + iteration * step


class JobPoller:
    def __init__(
        self,
        service: JobService,
        tasks: TaskSink,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = time.monotonic,
        extractors: Iterable[Extractor] = STATUS_EXTRACTORS,
    ) -> None:
        self.service = service
        self.tasks = tasks
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.timeout_seconds = float(timeout_seconds)
        self._sleep = sleep
        self._clock = clock
        self._extractors = tuple(extractors)

    # ---- public API ----

    async def run_job(
        self,
        task_id: str,
        payload: dict[str, Any],
        *,
        decoder: Decoder = decode_passthrough,
        token: CancellationToken | None = None,
    ) -> JobOutcome:
        """Run one job end-to-end and write the terminal state to the task."""
        outcome = await self.poll_job(payload, task_id=task_id, decoder=decoder, token=token)
        if token is not None and token.superseded:
            logger.info("Job for task=%s was replaced; leaving the task to the new job", task_id)
            return outcome
        self._finish(task_id, outcome.state, outcome.result, outcome.error)
        return outcome

    async def run_chain(
        self,
        task_id: str,
        spec: ChainSpec,
        *,
        token: CancellationToken | None = None,
        on_iteration: IterationCallback | None = None,
    ) -> ChainOutcome:
        """
        Run `spec.iterations` jobs strictly in sequence.

        Iteration k reports progress inside [20 + (k-1)*70/N, 20 + k*70/N].
        Completed iterations are appended to the result list right away, so a
        consumer can show iteration 1 while iteration 2 is still running.
        A failed iteration stops the chain; earlier results are kept.
        """
        total = max(1, int(spec.iterations))
        chain = ChainOutcome(state=JobState.SUBMITTING, iterations=total)

        task = self.tasks.get_task(task_id)
        base_description = str(getattr(task, "description", "") or "")
        current = spec.initial_input

        for number in range(1, total + 1):
            band = chain_band(number, total)
            self._update(
                task_id,
                progress=int(band[0]),
                status=TaskStatus.RUNNING,
                description=f"{base_description} (iteration {number}/{total})".strip(),
            )
            logger.info("Chain task=%s iteration %d/%d started", task_id, number, total)

            try:
                payload = spec.build_payload(current, number)
            except Exception as e:
                logger.exception("Chain task=%s could not build payload for iteration %d", task_id, number)
                outcome = JobOutcome(state=JobState.FAILED, error=f"Invalid payload: {e}")
            else:
                outcome = await self.poll_job(
                    payload, task_id=task_id, band=band, decoder=spec.decoder, token=token
                )

            chain.last = outcome
            if not outcome.ok or outcome.result is None:
                if token is not None and token.superseded:
                    chain.state = JobState.CANCELLED
                    chain.error = cancel_message(token)
                    logger.info("Chain task=%s was replaced at iteration %d/%d", task_id, number, total)
                    return chain
                chain.state = JobState.CANCELLED if outcome.state == JobState.CANCELLED else JobState.FAILED
                chain.error = outcome.error or DEFAULT_FAILED_MESSAGE
                if total > 1 and chain.state == JobState.FAILED:
                    chain.error = f"Iteration {number}/{total}: {chain.error}"
                logger.warning(
                    "Chain task=%s stopped at iteration %d/%d (%s): %s",
                    task_id, number, total, outcome.state.value, chain.error,
                )
                self._finish(task_id, chain.state, None, chain.error)
                return chain

            item = IterationResult(number=number, result=outcome.result)
            chain.results.append(item)
            if on_iteration is not None:
                try:
                    on_iteration(item, list(chain.results))
                except Exception:
                    logger.exception("Chain task=%s iteration callback failed", task_id)

            current = outcome.result.next_input
            self._update(task_id, progress=int(band[1]), status=TaskStatus.RUNNING)

        chain.state = JobState.COMPLETED
        self._finish(task_id, chain.state, chain.final, None)
        logger.info("Chain task=%s completed (%d iterations)", task_id, total)
        return chain

    async def poll_job(
        self,
        payload: dict[str, Any],
        *,
        task_id: str | None = None,
        band: Band = (0.0, 100.0),
        decoder: Decoder = decode_passthrough,
        token: CancellationToken | None = None,
    ) -> JobOutcome:
        """
        Submit and poll one job.

        Reports intermediate progress for `task_id` (mapped into `band`) but leaves
        the terminal task update to the caller.
        """
        outcome = JobOutcome(state=JobState.SUBMITTING)
        outcome.history.append(JobState.SUBMITTING)

        def end(state: JobState, error: str | None = None) -> JobOutcome:
            outcome.state = state
            outcome.error = error
            outcome.history.append(state)
            return outcome

        if token is not None and token.cancelled:
            return end(JobState.CANCELLED, cancel_message(token))

        try:
            job_id = await self.service.submit(payload)
        except Exception as e:
            logger.warning("Job submission failed task=%s: %s", task_id, e)
            return end(JobState.FAILED, str(e) or DEFAULT_FAILED_MESSAGE)

        if not job_id:
            logger.warning("Job submission returned no id task=%s", task_id)
            return end(JobState.FAILED, NO_JOB_ID_MESSAGE)

        outcome.job_id = str(job_id)
        started_at = self._clock()
        logger.info("Job submitted task=%s job=%s", task_id, outcome.job_id)
        self._report(task_id, band, PROGRESS_SUBMITTED)

        while True:
            await self._pause(token)
            if token is not None and token.cancelled:
                logger.info("Job polling stopped locally task=%s job=%s", task_id, outcome.job_id)
                return end(JobState.CANCELLED, cancel_message(token))

            outcome.state = JobState.POLLING
            outcome.history.append(JobState.POLLING)
            outcome.polls += 1

            try:
                doc = await self.service.status(outcome.job_id)
            except Exception as e:
                # Transient: keep polling until the deadline.
                logger.warning("Status check failed job=%s (poll %d): %s", outcome.job_id, outcome.polls, e)
                if self._expired(started_at):
                    return self._timed_out(outcome, end)
                continue

            if token is not None and token.cancelled:
                # Cancelled while the status call was in flight: drop the response.
                return end(JobState.CANCELLED, cancel_message(token))

            remote = str(doc.get("status", "") if isinstance(doc, dict) else "").upper()
            logger.debug("Job %s status=%s", outcome.job_id, remote or "?")

            if remote == RemoteStatus.FAILED:
                message = doc.get("error") if isinstance(doc, dict) else None
                return end(JobState.FAILED, str(message) if message else DEFAULT_FAILED_MESSAGE)

            if remote == RemoteStatus.CANCELLED:
                return end(JobState.FAILED, REMOTE_CANCELLED_MESSAGE)

            if remote == RemoteStatus.COMPLETED:
                found = extract_result(doc, self._extractors)
                if found is None:
                    outcome.raw_response = doc
                    logger.error(
                        "Job %s completed but no result was found. Response: %s",
                        outcome.job_id, _dump(doc),
                    )
                    return end(JobState.FAILED, RESULT_NOT_FOUND_MESSAGE)
                try:
                    outcome.result = decoder(found)
                except Exception as e:
                    outcome.raw_response = doc
                    logger.exception("Job %s result could not be decoded", outcome.job_id)
                    return end(JobState.FAILED, f"Failed to decode result: {e}")
                self._report(task_id, band, PROGRESS_RESULT)
                logger.info("Job %s completed after %d polls", outcome.job_id, outcome.polls)
                return end(JobState.COMPLETED)

            # PENDING / IN_QUEUE / IN_PROGRESS / anything unknown
            pct = min(PROGRESS_POLL_CAP, PROGRESS_FIRST_POLL + PROGRESS_POLL_STEP * (outcome.polls - 1))
            self._report(task_id, band, pct)
            if self._expired(started_at):
                return self._timed_out(outcome, end)

    # ---- internals ----

    async def _pause(self, token: CancellationToken | None) -> None:
        if token is None:
            await self._sleep(self.interval_seconds)
            return
        if token.cancelled:
            return

        sleeper = asyncio.ensure_future(self._sleep(self.interval_seconds))
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, waiter):
                if not fut.done():
                    fut.cancel()

    def _expired(self, started_at: float) -> bool:
        return self._clock() - started_at > self.timeout_seconds

    def _timed_out(self, outcome: JobOutcome, end: Callable[..., JobOutcome]) -> JobOutcome:
        logger.warning("Job %s timed out after %d polls", outcome.job_id, outcome.polls)
        return end(JobState.TIMED_OUT, timeout_message(self.timeout_seconds))

    def _report(self, task_id: str | None, band: Band, pct: float) -> None:
        if task_id is None:
            return
        lo, hi = band
        self._update(task_id, progress=int(lo + (hi - lo) * pct / 100.0), status=TaskStatus.RUNNING)

    def _update(self, task_id: str | None, **patch: Any) -> None:
        if task_id is None:
            return
        self.tasks.update_task(task_id, patch)

    def _finish(
        self, task_id: str, state: JobState, result: JobResult | None, error: str | None
    ) -> None:
        # Terminal transitions always set progress to 100.
        if state == JobState.COMPLETED and result is not None:
            self._update(
                task_id,
                status=TaskStatus.COMPLETED,
                progress=100,
                result_url=result.url,
                result_base64=result.base64,
                error=None,
            )
        elif state == JobState.CANCELLED:
            self._update(task_id, status=TaskStatus.CANCELLED, progress=100, error=error)
        else:
            self._update(task_id, status=TaskStatus.FAILED, progress=100, error=error or DEFAULT_FAILED_MESSAGE)


def _dump(doc: Any) -> str:
    try:
        return json.dumps(doc, ensure_ascii=False, default=str)[:4000]
    except (TypeError, ValueError):
        return repr(doc)[:4000]
