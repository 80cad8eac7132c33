# src/ai_toolbox/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState inside the event loop, then runs the
console connector until /exit (or waits for Ctrl+C when the console is off).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from ..cli.bootstrap import create_initial_state, shutdown_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _run(settings) -> None:
    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)
    try:
        if settings.console_enabled:
            await run_console_loop(state)
        else:
            logger.info("Console disabled. Nothing to drive jobs; press Ctrl+C to stop.")
            await asyncio.Event().wait()
    finally:
        await shutdown_state(state)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    setup_logging(log_dir=settings.data_dir, console_level=console_level)
    logger.info("Starting %s...", settings.app_name)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run(settings))

    logger.info("Bye.")


if __name__ == "__main__":
    main()
