"""
Stage Worker Client
--------------------
Typed records crossing the orchestrator / worker boundary and the httpx
client that delivers one StageWorkerRequest per orchestrator tick.

A failing worker never crashes a tick.  Only errors raised before the request
reached the worker (connect failures, pool timeouts) are retried with
tenacity; a read timeout or a dropped response is reported at once, since
the worker may already be processing the batch.  Exhausted or unretried
errors come back inside the returned payload.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from legal_ingest.config import PipelineSettings
from legal_ingest.schemas import JobType

# Raised before the request reached the worker; resending cannot double-dispatch
UNDELIVERED_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class StageWorkerRequest(BaseModel):
    concurrency_docs: int = Field(default=10, ge=1)


class StageWorkerResponse(BaseModel):
    processed: int = 0
    failed: int = 0
    qa_rejected: int = 0
    abandoned: int = 0               # lease expiring or lost to another worker
    total_units: int = 0             # chunks written / vectors stored / records enriched
    remaining: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)


class WorkerClient:
    """POSTs StageWorkerRequests to the configured worker endpoint of each stage."""

    def __init__(self, settings: PipelineSettings, client: Optional[httpx.Client] = None) -> None:
        self.settings = settings
        self._client = client
        self._retrying = Retrying(
            stop=stop_after_attempt(max(settings.worker_retry_attempts, 1)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(UNDELIVERED_ERRORS),
            reraise=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = self.settings.internal_ingest_key or self.settings.cron_worker_key
        if key:
            headers["x-internal-key"] = key
        return headers

    def _post(self, url: str, payload: dict) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, json=payload, headers=self._headers())
        with httpx.Client(timeout=self.settings.worker_timeout_s) as client:
            return client.post(url, json=payload, headers=self._headers())

    def dispatch(self, job_type: JobType, concurrency_docs: int) -> Any:
        """Call the stage worker once; return its JSON body verbatim."""
        url = self.settings.worker_url(job_type)
        request = StageWorkerRequest(concurrency_docs=concurrency_docs)

        try:
            response = self._retrying(self._post, url, request.model_dump())
        except httpx.HTTPError as exc:
            logger.error(f"[WorkerClient] {job_type.value} worker unreachable at {url}: {exc}")
            return {"error": str(exc) or exc.__class__.__name__, "stage": job_type.value}

        if response.is_error:
            logger.warning(
                f"[WorkerClient] {job_type.value} worker returned HTTP {response.status_code}"
            )
        try:
            return response.json()
        except ValueError:
            return {"status": response.status_code}
