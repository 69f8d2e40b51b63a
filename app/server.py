"""
Legal Ingestion Pipeline - Web API Server
------------------------------------------
FastAPI server hosting the pipeline orchestrator and the stage workers.

Endpoints:
  POST /api/pipeline/tick       -> one orchestrator tick (cron, once a minute)
  POST /api/workers/{stage}     -> process one batch of chunk / embed / enrich jobs
  GET  /api/health              -> job counts per stage and status

Run from the project root:
    uvicorn app.server:app --port 8000

Stage handlers are registered at startup with register_stage_handler().  The
chunk stage needs a document store; embedding and enrichment wrap model
clients and are registered by the deployment that owns those credentials.
"""
from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

# Windows cp1252 terminal fix
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

from fastapi import Body, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from legal_ingest.config import PipelineSettings, get_settings
from legal_ingest.jobs.repository import JobRepository, SqlJobRepository, create_session_factory
from legal_ingest.orchestration.orchestrator import PipelineOrchestrator, TickResult, is_authorized
from legal_ingest.orchestration.stage_worker import StageHandler, StageWorker
from legal_ingest.orchestration.worker_client import (
    StageWorkerRequest,
    StageWorkerResponse,
    WorkerClient,
)
from legal_ingest.schemas import JobType
from legal_ingest.utils.logger import setup_logger

# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

_settings: Optional[PipelineSettings] = None
_repository: Optional[JobRepository] = None
_orchestrator: Optional[PipelineOrchestrator] = None
_stage_handlers: dict[JobType, StageHandler] = {}


def register_stage_handler(job_type: JobType, handler: StageHandler) -> None:
    """Make `handler` process jobs posted to /api/workers/<job_type>."""
    _stage_handlers[job_type] = handler
    logger.info(f"[Server] Handler registered for stage '{job_type.value}'")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build settings, job repository and orchestrator once at startup."""
    global _settings, _repository, _orchestrator
    if _settings is None:
        _settings = get_settings()
        setup_logger(
            log_level=_settings.log_level, log_file=_settings.log_file, serialize=_settings.log_json
        )
    if _repository is None:
        _repository = SqlJobRepository(
            create_session_factory(_settings.database_url),
            max_attempts=_settings.max_attempts,
        )
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator(
            _repository,
            WorkerClient(_settings),
            concurrency_docs=_settings.concurrency_docs,
        )
    logger.info(
        f"[Server] Pipeline ready | db={_settings.database_url} | "
        f"handlers={sorted(j.value for j in _stage_handlers)}"
    )
    yield
    _orchestrator = None
    _repository = None
    logger.info("[Server] Pipeline unloaded.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Legal Ingestion Pipeline API",
    description="Chunk -> embed -> enrich job orchestration for legal documents",
    version="1.0.0",
    lifespan=lifespan,
)


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/pipeline/tick", response_model=TickResult)
async def pipeline_tick(
    _body: Optional[dict] = Body(default=None),
    x_internal_key: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
):
    """
    Advance the pipeline by one stage.

    The backlog queries and the outbound worker call are blocking, so the
    tick runs in a thread-pool executor.
    """
    if _settings is None or _orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    if not is_authorized(x_internal_key, authorization, _settings):
        logger.warning("[API] Tick rejected: missing or invalid credentials")
        return _unauthorized()

    try:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _orchestrator.tick)
    except Exception as exc:
        logger.exception(f"[API] Tick failed: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc) or exc.__class__.__name__})


@app.post("/api/workers/{stage}", response_model=StageWorkerResponse)
async def run_stage_worker(
    stage: str,
    request: Optional[StageWorkerRequest] = None,
    x_internal_key: Optional[str] = Header(default=None),
):
    """Claim and process one batch of jobs for `stage`."""
    if _settings is None or _repository is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    if not is_authorized(x_internal_key, None, _settings, allow_bearer=False):
        logger.warning(f"[API] Worker '{stage}' rejected: missing or invalid internal key")
        return _unauthorized()

    try:
        job_type = JobType(stage)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown stage '{stage}'")

    handler = _stage_handlers.get(job_type)
    if handler is None:
        raise HTTPException(status_code=503, detail=f"No handler registered for stage '{stage}'")

    worker = StageWorker(
        job_type,
        _repository,
        handler,
        lease=_settings.lease,
        max_concurrency_docs=_settings.max_concurrency_docs,
        backoff_base=_settings.backoff_base,
        backoff_max=_settings.backoff_max,
    )
    request = request or StageWorkerRequest()
    logger.info(f"[API] Worker '{stage}' | concurrency_docs={request.concurrency_docs}")

    try:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(worker.run, request))
    except Exception as exc:
        logger.exception(f"[API] Worker '{stage}' failed: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc) or exc.__class__.__name__})


@app.get("/api/health")
async def health():
    """Return job counts per stage and status."""
    if _repository is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    loop = asyncio.get_event_loop()
    counts = await loop.run_in_executor(None, _repository.status_counts)
    return {
        "status": "ok",
        "jobs": counts,
        "handlers": sorted(j.value for j in _stage_handlers),
    }
