"""Tests for stage workers: claim, process, complete / fail with backoff."""

from datetime import timedelta

import pytest

from legal_ingest.orchestration.stage_worker import ChunkQualityError, ChunkStageHandler, StageWorker
from legal_ingest.orchestration.worker_client import StageWorkerRequest
from legal_ingest.schemas import ChunkType, JobStatus, JobType
from legal_ingest.validation.chunk_audit import compute_metrics
from tests.conftest import make_chunk


def _worker(repository, clock, handler, job_type=JobType.CHUNK, **kwargs):
    return StageWorker(job_type, repository, handler, clock=clock, **kwargs)


class TestStageWorker:

    def test_success_completes_and_enqueues_next_stage(self, repository, clock):
        job = repository.enqueue("doc-1", JobType.CHUNK)
        worker = _worker(repository, clock, lambda j: 4)

        response = worker.run(StageWorkerRequest(concurrency_docs=10))

        assert response.processed == 1
        assert response.failed == 0
        assert response.total_units == 4
        assert response.remaining == 0
        assert repository.get(job.id).status == JobStatus.DONE
        assert repository.count_ready(JobType.EMBED) == 1

    def test_last_stage_enqueues_nothing(self, repository, clock):
        repository.enqueue("doc-1", JobType.ENRICH)
        worker = _worker(repository, clock, lambda j: 1, job_type=JobType.ENRICH)
        worker.run(StageWorkerRequest())
        counts = repository.status_counts()
        assert counts["enrich"]["done"] == 1
        assert sum(counts["chunk"].values()) == 0
        assert sum(counts["embed"].values()) == 0

    def test_failure_schedules_backoff(self, repository, clock):
        job = repository.enqueue("doc-1", JobType.CHUNK)

        def explode(j):
            raise RuntimeError("extractor unavailable")

        worker = _worker(repository, clock, explode, backoff_base=timedelta(seconds=60))
        response = worker.run(StageWorkerRequest())

        assert response.failed == 1
        assert response.processed == 0
        assert response.errors == ["doc-1: extractor unavailable"]
        stored = repository.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 1
        assert stored.next_run_at == clock.now + timedelta(seconds=60)
        assert stored.last_error == "extractor unavailable"
        assert repository.count_ready(JobType.EMBED) == 0

    def test_one_bad_document_does_not_abort_the_batch(self, repository, clock):
        for i in range(3):
            repository.enqueue(f"doc-{i}", JobType.CHUNK)

        def handler(j):
            if j.document_id == "doc-1":
                raise ValueError("bad encoding")
            return 2

        response = _worker(repository, clock, handler).run(StageWorkerRequest())
        assert response.processed == 2
        assert response.failed == 1
        assert response.total_units == 4

    def test_concurrency_is_capped(self, repository, clock):
        for i in range(5):
            repository.enqueue(f"doc-{i}", JobType.CHUNK)
        worker = _worker(repository, clock, lambda j: 1, max_concurrency_docs=2)

        response = worker.run(StageWorkerRequest(concurrency_docs=25))
        assert response.processed == 2
        assert response.remaining == 3

    def test_job_with_expiring_lease_is_abandoned(self, repository, clock):
        job = repository.enqueue("doc-1", JobType.CHUNK)
        calls = []
        worker = _worker(repository, clock, calls.append, lease=timedelta(seconds=5))

        response = worker.run(StageWorkerRequest())

        assert response.abandoned == 1
        assert calls == []
        assert repository.get(job.id).status == JobStatus.PROCESSING
        clock.advance(seconds=6)
        assert repository.count_stale(JobType.CHUNK) == 1

    def test_late_result_after_reclaim_is_discarded(self, repository, clock):
        job = repository.enqueue("doc-1", JobType.CHUNK)
        reclaimed = []

        def slow(j):
            clock.advance(minutes=6)
            reclaimed.extend(repository.claim(JobType.CHUNK, 1, timedelta(minutes=5)))
            return 3

        response = _worker(repository, clock, slow).run(StageWorkerRequest())

        assert [j.id for j in reclaimed] == [job.id]
        assert response.abandoned == 1
        assert response.processed == 0
        stored = repository.get(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.lease_expires_at == reclaimed[0].lease_expires_at
        assert repository.count_ready(JobType.EMBED) == 0

    def test_late_failure_after_reclaim_does_not_rearm_the_job(self, repository, clock):
        job = repository.enqueue("doc-1", JobType.CHUNK)

        def slow_then_fail(j):
            clock.advance(minutes=6)
            repository.claim(JobType.CHUNK, 1, timedelta(minutes=5))
            raise RuntimeError("timeout talking to storage")

        response = _worker(repository, clock, slow_then_fail).run(StageWorkerRequest())

        assert response.abandoned == 1
        assert response.failed == 0
        stored = repository.get(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.attempts == 0
        assert repository.claim(JobType.CHUNK, 1, timedelta(minutes=5)) == []

    def test_qa_rejection_is_counted_separately(self, repository, clock):
        repository.enqueue("doc-1", JobType.CHUNK)
        metrics = compute_metrics("doc-1", "t", "a" * 300, [make_chunk(0, 0, 100)])

        def reject(j):
            raise ChunkQualityError(metrics)

        response = _worker(repository, clock, reject).run(StageWorkerRequest())
        assert response.qa_rejected == 1
        assert response.failed == 0
        assert "QA validation failed" in response.errors[0]

    @pytest.mark.parametrize("attempts,seconds", [(0, 60), (1, 120), (3, 480), (10, 3600)])
    def test_backoff_for(self, repository, clock, attempts, seconds):
        worker = _worker(repository, clock, lambda j: 0)
        assert worker.backoff_for(attempts) == timedelta(seconds=seconds)


class TestChunkStageHandler:

    def test_chunks_and_saves(self, repository, clock, law_text):
        saved = {}
        handler = ChunkStageHandler(lambda doc_id: law_text, saved.__setitem__)
        repository.enqueue("doc-1", JobType.CHUNK)

        response = _worker(repository, clock, handler).run(StageWorkerRequest())

        assert response.processed == 1
        assert response.total_units == len(saved["doc-1"])
        assert saved["doc-1"][0].chunk_type == ChunkType.HEADER
        assert repository.count_ready(JobType.EMBED) == 1

    def test_doc_type_resolved_per_document(self, repository, law_text):
        saved = {}
        handler = ChunkStageHandler(
            lambda doc_id: law_text,
            saved.__setitem__,
            resolve_doc_type={"act": "law", "ruling": "court_decision"}.__getitem__,
        )
        handler(repository.enqueue("act", JobType.CHUNK))
        handler(repository.enqueue("ruling", JobType.CHUNK))

        assert saved["act"][1].chunk_type == ChunkType.ARTICLE
        assert [c.chunk_type for c in saved["ruling"]] == [ChunkType.TEXT]

    def test_blank_document_yields_nothing(self, repository):
        saved = {}
        handler = ChunkStageHandler(lambda doc_id: "   ", saved.__setitem__)
        job = repository.enqueue("doc-1", JobType.CHUNK)
        assert handler(job) == 0
        assert saved == {}

    def test_unindexable_chunks_are_rejected(self, repository):
        class GappyChunker:
            def chunk_document(self, text, doc_type):
                return [make_chunk(0, 0, 10), make_chunk(1, 20, 30)]

        saved = {}
        handler = ChunkStageHandler(lambda doc_id: "a" * 30, saved.__setitem__, chunker=GappyChunker())
        job = repository.enqueue("doc-1", JobType.CHUNK)

        with pytest.raises(ChunkQualityError) as exc_info:
            handler(job)
        assert exc_info.value.metrics.gap_violations
        assert "gap" in str(exc_info.value)
        assert saved == {}
