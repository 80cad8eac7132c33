# src/ai_toolbox/jobs/single_request.py

"""
Single-shot request runner.

For provider calls that already wait for the result (RunPod /runsync,
queue-subscribe style SDKs): one awaitable, coarse progress, then the same
result extraction and terminal task update as a polled job.

JobSupervisor.start_request runs it in the background; /runsync uses that.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from ..core.ports import TaskSink
from ..tasks.task_models import TaskStatus
from .extractors import URL_EXTRACTORS, Decoder, Extractor, decode_passthrough, extract_result
from .job_models import CancellationToken, JobOutcome, JobState
from .job_poller import cancel_message

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_RESPONDED = 90
REQUEST_FAILED_MESSAGE = "Request failed"
RESULT_NOT_FOUND_MESSAGE = "Could not get the result from the response"


def request_error_message(err: BaseException) -> str:
    """Prefer validation details from an error body ({"detail": ...}) over the plain message."""
    body = getattr(err, "body", None)
    detail = body.get("detail") if isinstance(body, dict) else None
    if detail:
        if isinstance(detail, list):
            text = ", ".join(json.dumps(d, ensure_ascii=False, default=str) for d in detail)
        else:
            text = json.dumps(detail, ensure_ascii=False, default=str)
        return f"Validation error: {text}"
    return str(err).strip() or REQUEST_FAILED_MESSAGE


async def _await_call(call: Callable[[], Awaitable[Any]], token: CancellationToken | None) -> tuple[bool, Any]:
    """(finished, response). finished is False when the token fired first; the call is then cancelled."""
    if token is None:
        return True, await call()

    pending = asyncio.ensure_future(call())
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({pending, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if not pending.done():
        pending.cancel()
        return False, None
    return True, pending.result()


async def run_single_request(
    tasks: TaskSink,
    task_id: str,
    call: Callable[[], Awaitable[Any]],
    *,
    extractors: Iterable[Extractor] = URL_EXTRACTORS,
    decoder: Decoder = decode_passthrough,
    token: CancellationToken | None = None,
) -> JobOutcome:
    """Await `call()` on behalf of `task_id` and write the terminal state to the task."""
    outcome = JobOutcome(state=JobState.SUBMITTING, history=[JobState.SUBMITTING])
    tasks.update_task(task_id, {"progress": PROGRESS_STARTED, "status": TaskStatus.RUNNING})

    try:
        finished, response = await _await_call(call, token)
    except Exception as e:
        logger.warning("Single request failed task=%s: %s", task_id, e)
        return _fail(tasks, task_id, outcome, request_error_message(e))

    if token is not None and not finished:
        outcome.state = JobState.CANCELLED
        outcome.error = cancel_message(token)
        outcome.history.append(JobState.CANCELLED)
        logger.info("Single request stopped locally task=%s", task_id)
        if not token.superseded:
            tasks.update_task(
                task_id, {"progress": 100, "status": TaskStatus.CANCELLED, "error": outcome.error}
            )
        return outcome

    tasks.update_task(task_id, {"progress": PROGRESS_RESPONDED, "status": TaskStatus.RUNNING})

    found = extract_result(response, extractors)
    if found is None:
        outcome.raw_response = response
        logger.error("Single request task=%s returned an unknown shape: %r", task_id, response)
        return _fail(tasks, task_id, outcome, RESULT_NOT_FOUND_MESSAGE)

    try:
        outcome.result = decoder(found)
    except Exception as e:
        logger.exception("Single request task=%s result could not be decoded", task_id)
        return _fail(tasks, task_id, outcome, f"Failed to decode result: {e}")

    outcome.state = JobState.COMPLETED
    outcome.history.append(JobState.COMPLETED)
    tasks.update_task(
        task_id,
        {
            "progress": 100,
            "status": TaskStatus.COMPLETED,
            "result_url": outcome.result.url,
            "result_base64": outcome.result.base64,
            "error": None,
        },
    )
    return outcome


def _fail(tasks: TaskSink, task_id: str, outcome: JobOutcome, message: str) -> JobOutcome:
    outcome.state = JobState.FAILED
    outcome.error = message
    outcome.history.append(JobState.FAILED)
    tasks.update_task(task_id, {"progress": 100, "status": TaskStatus.FAILED, "error": message})
    return outcome
