"""
Shared test fixtures for the legal ingestion test suite.

Provides reusable fixtures: sample texts and sources, an in-memory job
repository driven by a controllable clock, and pipeline settings.
"""
from datetime import datetime, timedelta

import pytest

from legal_ingest.config import PipelineSettings
from legal_ingest.jobs.repository import SqlJobRepository, create_session_factory
from legal_ingest.schemas import Chunk, ChunkType, SourceRecord


class FakeClock:
    """Callable clock the tests move forward explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingDispatcher:
    """Stands in for WorkerClient; records every dispatch."""

    def __init__(self, response=None):
        self.calls = []
        self.response = response if response is not None else {"processed": 1}

    def dispatch(self, job_type, concurrency_docs):
        self.calls.append((job_type, concurrency_docs))
        return self.response


def make_chunk(index, start, end, text=None, chunk_type=ChunkType.TEXT, label=None, chunk_hash=None):
    """Chunk with explicit offsets; text defaults to filler of the declared length."""
    if text is None:
        text = "x" * max(end - start, 0)
    return Chunk(
        chunk_index=index,
        chunk_type=chunk_type,
        chunk_text=text,
        char_start=start,
        char_end=end,
        label=label,
        chunk_hash=chunk_hash if chunk_hash is not None else f"h{index}",
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return PipelineSettings(
        database_url="sqlite://",
        internal_ingest_key="ingest-secret",
        cron_worker_key="cron-secret",
        worker_base_url="http://workers.test",
        worker_retry_attempts=1,
        log_file=None,
    )


# ---------------------------------------------------------------------------
# Job store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, 0))


@pytest.fixture
def session_factory():
    return create_session_factory("sqlite://")


@pytest.fixture
def repository(session_factory, clock):
    return SqlJobRepository(session_factory, max_attempts=3, clock=clock)


# ---------------------------------------------------------------------------
# Sample data fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def law_text():
    """Small act with a preamble and three articles."""
    return (
        "LAW OF THE REPUBLIC OF ARMENIA\n"
        "ON ADMINISTRATIVE PROCEDURES\n\n"
        "Article 1. Subject of the law\n"
        "This law regulates relations arising in the course of administrative proceedings.\n\n"
        "Article 2. Scope\n"
        "The law applies to all administrative bodies, as defined in Article 3.\n\n"
        "Article 3. Definitions\n"
        "For the purposes of this law an administrative body is any state or local body.\n"
    )


@pytest.fixture
def txt_source():
    """Plain-text extraction: two prose chunks."""
    return SourceRecord(
        source_key="txt-75863",
        file_name="law_75863.txt",
        mime_type="text/plain",
        title="On  Administrative Procedures",
        content_text="Article 1. Prose.\nArticle 2. More prose.",
        source_url="https://www.arlis.am/DocumentView.aspx?docid=75863",
        date_adopted="2004-02-18",
        chunks=[
            Chunk.build(0, ChunkType.ARTICLE, "Article 1. Prose.\n", 0, label="Art. 1"),
            Chunk.build(1, ChunkType.ARTICLE, "Article 2. More prose.", 18, label="Art. 2"),
        ],
    )


@pytest.fixture
def pdf_source():
    """PDF extraction of the same act: one header, one table."""
    return SourceRecord(
        source_key="pdf-75863",
        file_name="law_75863.pdf",
        mime_type="application/pdf",
        title="On Administrative Procedures",
        content_text="ADMINISTRATIVE PROCEDURES\n| Fee | 1000 AMD |",
        source_url="https://www.arlis.am/docview.aspx?docid=75863",
        date_adopted="2004-02-18",
        chunks=[
            Chunk.build(0, ChunkType.HEADER, "ADMINISTRATIVE PROCEDURES\n", 0),
            Chunk.build(1, ChunkType.TABLE, "| Fee | 1000 AMD |", 26, label="Table 1"),
        ],
    )
