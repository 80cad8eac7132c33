# src/ai_toolbox/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time (job service credentials are checked when used).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TOOLBOX"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Local .env never overrides the real environment.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    data_dir: Path

    # ---- Connector flags ----
    console_enabled: bool

    # ---- Job service (RunPod serverless) ----
    runpod_endpoint: str
    runpod_api_key: str | None

    # ---- Polling ----
    poll_interval_seconds: float
    job_timeout_seconds: float
    http_timeout_seconds: float

    @property
    def job_service_configured(self) -> bool:
        return bool(self.runpod_endpoint.strip() and (self.runpod_api_key or "").strip())

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "ai-toolbox") or "ai-toolbox"
        log_level = _env(_k("LOG_LEVEL"), "INFO")
        data_dir = _env_path(_k("DATA_DIR"), Path(".local/toolbox"))

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        runpod_endpoint = (_first_env(_k("RUNPOD_ENDPOINT"), "RUNPOD_ENDPOINT", default="") or "").strip()
        runpod_api_key = _first_env(_k("RUNPOD_API_KEY"), "RUNPOD_API_KEY", default=None)

        # Never poll faster than once per second.
        poll_interval_seconds = max(1.0, _env_float(_k("POLL_INTERVAL_SECONDS"), 5.0))
        job_timeout_seconds = max(poll_interval_seconds, _env_float(_k("JOB_TIMEOUT_SECONDS"), 600.0))
        http_timeout_seconds = max(1.0, _env_float(_k("HTTP_TIMEOUT_SECONDS"), 30.0))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            console_enabled=console_enabled,
            runpod_endpoint=runpod_endpoint,
            runpod_api_key=runpod_api_key,
            poll_interval_seconds=poll_interval_seconds,
            job_timeout_seconds=job_timeout_seconds,
            http_timeout_seconds=http_timeout_seconds,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS


def friendly_config_error_message(err: Exception) -> str:
    msg = str(err).strip() or "Configuration error."
    if "RunPod endpoint is not set" in msg:
        return "Job service is not configured (missing endpoint). Set TOOLBOX_RUNPOD_ENDPOINT in .env."
    if "RunPod API key is not set" in msg:
        return "Job service is not configured (missing API key). Set TOOLBOX_RUNPOD_API_KEY in .env."
    return msg
