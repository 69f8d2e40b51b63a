"""
Pipeline Orchestrator
----------------------
Cron-style entry point (typically once a minute) that advances the
chunk -> embed -> enrich pipeline by one stage per invocation.

Per tick:
  1. Backlog per stage = ready jobs + stale jobs (expired lease), read fresh
     from the job repository.
  2. Strict priority: the earliest stage with a nonzero backlog wins, since
     every stage consumes the previous stage's output.
  3. Exactly one call to that stage's worker, which owns claiming, leasing and
     processing.  The orchestrator never touches job rows.

No state survives between ticks, so re-running a tick is always safe and a
stage gets its turn as soon as the stages upstream of it drain.
"""
from __future__ import annotations

import time
from typing import Any, Literal, Optional, Protocol

from loguru import logger
from pydantic import BaseModel

from legal_ingest.config import PipelineSettings
from legal_ingest.jobs.repository import JobRepository
from legal_ingest.schemas import JobType

STAGE_PRIORITY: tuple[JobType, ...] = (JobType.CHUNK, JobType.EMBED, JobType.ENRICH)

StageName = Literal["idle", "chunk", "embed", "enrich"]


class StageDispatcher(Protocol):
    def dispatch(self, job_type: JobType, concurrency_docs: int) -> Any:
        ...


class TickResult(BaseModel):
    chunk_pending: int
    embed_pending: int
    enrich_pending: int
    stage_triggered: StageName = "idle"
    worker_result: Optional[Any] = None
    duration_ms: int = 0


def is_authorized(
    internal_key: Optional[str],
    authorization: Optional[str],
    settings: PipelineSettings,
    allow_bearer: bool = True,
) -> bool:
    """
    Accept either configured internal secret in x-internal-key; optionally
    fall back to the presence of a non-empty bearer token.
    """
    if internal_key:
        for expected in (settings.internal_ingest_key, settings.cron_worker_key):
            if expected and internal_key == expected:
                return True

    if not allow_bearer:
        return False
    token = (authorization or "").replace("Bearer ", "", 1).strip()
    return bool(token)


def select_stage(backlog: dict[JobType, int]) -> Optional[JobType]:
    for stage in STAGE_PRIORITY:
        if backlog.get(stage, 0) > 0:
            return stage
    return None


class PipelineOrchestrator:
    """
    Usage:
        orchestrator = PipelineOrchestrator(repository, WorkerClient(settings))
        result = orchestrator.tick()
    """

    def __init__(
        self,
        repository: JobRepository,
        dispatcher: StageDispatcher,
        concurrency_docs: int = 25,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.concurrency_docs = concurrency_docs

    def backlog(self) -> dict[JobType, int]:
        return {stage: self.repository.backlog(stage) for stage in STAGE_PRIORITY}

    def tick(self) -> TickResult:
        started = time.monotonic()

        backlog = self.backlog()
        stage = select_stage(backlog)
        worker_result = None
        if stage is not None:
            worker_result = self.dispatcher.dispatch(stage, self.concurrency_docs)

        result = TickResult(
            chunk_pending=backlog[JobType.CHUNK],
            embed_pending=backlog[JobType.EMBED],
            enrich_pending=backlog[JobType.ENRICH],
            stage_triggered=stage.value if stage is not None else "idle",
            worker_result=worker_result,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            f"[Orchestrator] chunk={result.chunk_pending} embed={result.embed_pending} "
            f"enrich={result.enrich_pending} stage={result.stage_triggered} "
            f"duration={result.duration_ms}ms"
        )
        return result
