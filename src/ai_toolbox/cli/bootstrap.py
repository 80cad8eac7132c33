# src/ai_toolbox/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- builds the task registry and tab cache (one instance each for the process),
- wires the job service, poller and supervisor into AppState when configured.
"""

from __future__ import annotations

import logging

from ..config import friendly_config_error_message, get_settings
from ..core.state import AppState
from ..jobs.job_poller import JobPoller
from ..jobs.job_supervisor import JobSupervisor
from ..providers.runpod import RunPodJobService
from ..tabs.tab_cache import TabStateCache
from ..tasks.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None, job_service=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings (and the job service) injectable makes the app easier to
    test and avoids hidden global reads. If settings is None, falls back to
    get_settings().

    The supervisor subscribes to the registry, so this must run inside the
    event loop that will drive the jobs.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    tasks = TaskRegistry()
    tabs = TabStateCache()

    if job_service is None and getattr(settings, "job_service_configured", False):
        try:
            job_service = RunPodJobService(
                settings.runpod_endpoint,
                settings.runpod_api_key or "",
                timeout_seconds=settings.http_timeout_seconds,
            )
        except RuntimeError as e:
            logger.warning("Job service disabled: %s", friendly_config_error_message(e))
            job_service = None

    supervisor = None
    if job_service is not None:
        poller = JobPoller(
            job_service,
            tasks,
            interval_seconds=settings.poll_interval_seconds,
            timeout_seconds=settings.job_timeout_seconds,
        )
        supervisor = JobSupervisor(tasks, poller)
    else:
        logger.info("No job service configured; /run and /chain are disabled.")

    return AppState(
        settings=settings,
        tasks=tasks,
        tabs=tabs,
        job_service=job_service,
        supervisor=supervisor,
    )


async def shutdown_state(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    if state.supervisor is not None:
        try:
            await state.supervisor.shutdown()
        except Exception:
            logger.exception("Supervisor shutdown failed.")

    aclose = getattr(state.job_service, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception:
            logger.debug("Job service close failed.", exc_info=True)
