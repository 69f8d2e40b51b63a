"""
Stage Worker
-------------
Processes one batch of jobs for one pipeline stage:

  1. claim()     - atomically lease up to `concurrency_docs` ready/stale jobs
  2. handler()   - run the stage (chunk / embed / enrich) for each document
  3. complete()  - mark done and enqueue the document for the next stage
     or fail()   - bump attempts and schedule a retry with exponential backoff

A job whose lease is about to run out before the worker reaches it is left
alone so another worker can reclaim it once the lease expires.  A job that
another worker reclaimed while this one was still processing it is counted
as abandoned and its result discarded.

Embedding and enrichment handlers wrap external model calls and are supplied
by the caller; ChunkStageHandler ships here because its QA gate is the chunk
auditor.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from loguru import logger

from legal_ingest.chunking.chunker import LegalChunker
from legal_ingest.jobs.repository import JobRepository, LeaseLostError
from legal_ingest.orchestration.worker_client import StageWorkerRequest, StageWorkerResponse
from legal_ingest.schemas import Chunk, ChunkAuditMetrics, JobType, PipelineJob
from legal_ingest.validation.chunk_audit import audit_document

LEASE_SAFETY_MARGIN = timedelta(seconds=15)
MAX_REPORTED_ERRORS = 20


class StageHandler(Protocol):
    def __call__(self, job: PipelineJob) -> int:
        """Process the job's document; return the number of units produced."""
        ...


class ChunkQualityError(RuntimeError):
    """A freshly produced chunk set failed the integrity audit."""

    def __init__(self, metrics: ChunkAuditMetrics) -> None:
        self.metrics = metrics
        problems = []
        if not metrics.coverage_ok:
            problems.append(f"coverage={metrics.coverage_ratio:.3f}")
        if metrics.gap_violations:
            problems.append(f"{len(metrics.gap_violations)} gap(s)")
        if metrics.overlap_violations:
            problems.append(f"{len(metrics.overlap_violations)} overlap(s)")
        if metrics.boundary_violations:
            problems.append(f"{len(metrics.boundary_violations)} boundary violation(s)")
        if metrics.missing_indices:
            problems.append(f"missing indices {metrics.missing_indices[:5]}")
        if metrics.duplicate_hashes:
            problems.append(f"{len(metrics.duplicate_hashes)} duplicate hash(es)")
        if metrics.empty_chunks:
            problems.append(f"empty chunks {metrics.empty_chunks[:5]}")
        super().__init__(f"QA validation failed for {metrics.document_id}: {', '.join(problems)}")


class ChunkStageHandler:
    """
    Chunk a stored document, audit the result, and persist it only when the
    chunk set is indexable.

    Args:
        load_text: document_id -> normalized content text
        save_chunks: (document_id, chunks) -> None; replaces any previous chunk set
        resolve_doc_type: document_id -> doc type (law, code, court_decision, ...)
            read from the document's own record; `doc_type` is used when omitted
    """

    def __init__(
        self,
        load_text: Callable[[str], str],
        save_chunks: Callable[[str, list[Chunk]], None],
        chunker: Optional[LegalChunker] = None,
        doc_type: str = "law",
        source_table: str = "legal_documents",
        resolve_doc_type: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.load_text = load_text
        self.save_chunks = save_chunks
        self.chunker = chunker or LegalChunker()
        self.doc_type = doc_type
        self.source_table = source_table
        self.resolve_doc_type = resolve_doc_type

    def __call__(self, job: PipelineJob) -> int:
        text = self.load_text(job.document_id)
        doc_type = self.resolve_doc_type(job.document_id) if self.resolve_doc_type else self.doc_type
        chunks = self.chunker.chunk_document(text, doc_type)
        if not chunks:
            logger.info(f"[Worker:chunk] {job.document_id}: no chunkable content")
            return 0

        metrics = audit_document(job.document_id, self.source_table, text, chunks)
        if not metrics.is_indexable:
            raise ChunkQualityError(metrics)

        self.save_chunks(job.document_id, chunks)
        return len(chunks)


class StageWorker:
    """Claims and processes one batch of jobs for a single stage."""

    def __init__(
        self,
        job_type: JobType,
        repository: JobRepository,
        handler: StageHandler,
        lease: timedelta = timedelta(minutes=5),
        max_concurrency_docs: int = 50,
        backoff_base: timedelta = timedelta(seconds=60),
        backoff_max: timedelta = timedelta(hours=1),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.job_type = job_type
        self.repository = repository
        self.handler = handler
        self.lease = lease
        self.max_concurrency_docs = max_concurrency_docs
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        # Lease expiry is measured on the repository's clock
        self._clock = clock or repository.clock

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before the next try, given the attempts already made."""
        return min(self.backoff_base * (2 ** attempts), self.backoff_max)

    def _lease_running_out(self, job: PipelineJob) -> bool:
        if job.lease_expires_at is None:
            return False
        return self._clock() >= job.lease_expires_at - LEASE_SAFETY_MARGIN

    @staticmethod
    def _lease_lost(job: PipelineJob, response: StageWorkerResponse, tag: str) -> None:
        response.abandoned += 1
        logger.warning(
            f"{tag} {job.document_id}: lease lost to another worker, result discarded"
        )

    def run(self, request: StageWorkerRequest) -> StageWorkerResponse:
        started = time.monotonic()
        tag = f"[Worker:{self.job_type.value}]"
        limit = min(request.concurrency_docs, self.max_concurrency_docs)

        jobs = self.repository.claim(self.job_type, limit, self.lease)
        response = StageWorkerResponse()

        for job in jobs:
            if self._lease_running_out(job):
                response.abandoned += 1
                logger.warning(f"{tag} {job.document_id}: lease nearly expired, leaving for reclaim")
                continue

            try:
                units = self.handler(job)
            except Exception as exc:
                delay = self.backoff_for(job.attempts)
                try:
                    self.repository.fail(
                        job.id, delay, str(exc), lease_expires_at=job.lease_expires_at
                    )
                except LeaseLostError:
                    self._lease_lost(job, response, tag)
                    continue
                if isinstance(exc, ChunkQualityError):
                    response.qa_rejected += 1
                else:
                    response.failed += 1
                if len(response.errors) < MAX_REPORTED_ERRORS:
                    response.errors.append(f"{job.document_id}: {exc}")
                logger.warning(
                    f"{tag} {job.document_id} failed (attempt {job.attempts + 1}), "
                    f"retry in {int(delay.total_seconds())}s: {exc}"
                )
                continue

            try:
                self.repository.complete(job.id, lease_expires_at=job.lease_expires_at)
            except LeaseLostError:
                self._lease_lost(job, response, tag)
                continue
            response.processed += 1
            response.total_units += units

            next_stage = self.job_type.next_stage
            if next_stage is not None:
                self.repository.enqueue(job.document_id, next_stage)

        response.remaining = self.repository.backlog(self.job_type)
        response.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"{tag} claimed={len(jobs)} processed={response.processed} failed={response.failed} "
            f"qa_rejected={response.qa_rejected} abandoned={response.abandoned} "
            f"units={response.total_units} remaining={response.remaining} "
            f"duration={response.duration_ms}ms"
        )
        return response
