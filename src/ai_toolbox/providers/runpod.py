# src/ai_toolbox/providers/runpod.py

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
# /runsync keeps the connection open while the job runs.
RUNSYNC_TIMEOUT_SECONDS = 120.0

_RUN_SUFFIX_RE = re.compile(r"/run/?$")


class JobServiceError(RuntimeError):
    """Base error for job service calls."""


class JobSubmissionError(JobServiceError):
    """The job could not be created (no polling should follow)."""


class JobTransportError(JobServiceError):
    """A status check failed at the transport level (transient)."""


def normalize_endpoint(endpoint: str) -> str:
    """Accept both ".../v2/<id>" and ".../v2/<id>/run"."""
    url = (endpoint or "").strip().rstrip("/")
    return _RUN_SUFFIX_RE.sub("", url).rstrip("/")


def _make_timeout(total_s: float) -> httpx.Timeout:
    connect_s = min(10.0, total_s)
    return httpx.Timeout(total_s, connect=connect_s)


class RunPodJobService:
    """
    RunPod serverless endpoint client (JobService port).

    POST {endpoint}/run          -> {"id": ...}
    POST {endpoint}/runsync      -> status document (waits for the job)
    GET  {endpoint}/status/{id}  -> {"status": ..., "output"?: ..., "error"?: ...}
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = normalize_endpoint(endpoint)
        if not self.endpoint:
            raise RuntimeError("RunPod endpoint is not set. Set TOOLBOX_RUNPOD_ENDPOINT in your .env.")
        if not (api_key or "").strip():
            raise RuntimeError("RunPod API key is not set. Set TOOLBOX_RUNPOD_API_KEY in your .env.")

        self._headers = {"Authorization": f"Bearer {api_key.strip()}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=_make_timeout(float(timeout_seconds)))

    async def _post(self, path: str, payload: dict[str, Any], **kwargs: Any) -> Any:
        try:
            resp = await self._client.post(
                f"{self.endpoint}{path}", json=payload, headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise JobSubmissionError(f"RunPod request failed: {e}") from e

        if resp.is_error:
            raise JobSubmissionError(f"RunPod API error: {resp.status_code} - {resp.text}")

        try:
            return resp.json()
        except ValueError as e:
            raise JobSubmissionError("RunPod returned a non-JSON response") from e

    async def submit(self, payload: dict[str, Any]) -> str:
        data = await self._post("/run", payload)
        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            raise JobSubmissionError("Could not get a job id from RunPod")

        logger.debug("RunPod job created id=%s", job_id)
        return str(job_id)

    async def run_sync(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST {endpoint}/runsync: RunPod holds the request until the job ends.

        Returns the status document. A FAILED job is raised as JobServiceError;
        a job still running when RunPod gives up comes back as-is (no output).
        """
        data = await self._post("/runsync", payload, timeout=_make_timeout(RUNSYNC_TIMEOUT_SECONDS))
        if not isinstance(data, dict):
            raise JobSubmissionError(f"Unexpected runsync response: {type(data).__name__}")
        if str(data.get("status", "")).upper() == "FAILED":
            raise JobServiceError(str(data.get("error") or "Job failed"))
        return data

    async def status(self, job_id: str) -> dict[str, Any]:
        url = f"{self.endpoint}/status/{job_id}"
        try:
            resp = await self._client.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            raise JobTransportError(f"Status check failed: {e}") from e

        if resp.is_error:
            raise JobTransportError(f"Status check failed: {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise JobTransportError("Status check returned a non-JSON response") from e

        if not isinstance(data, dict):
            raise JobTransportError(f"Unexpected status document: {type(data).__name__}")
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
