"""
Core Pydantic schemas for the legal ingestion pipeline.

All stages share these models so a chunk keeps the same shape from the
extractor, through merging and auditing, up to the job queue that drives
chunking, embedding and enrichment.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from legal_ingest.utils.helpers import sha256_hex


# --- Enumerations ------------------------------------------------------------

class ChunkType(str, Enum):
    TEXT = "text"
    ARTICLE = "article"
    TABLE = "table"
    HEADER = "header"


class MatchRuleName(str, Enum):
    ARLIS_ID = "arlis_id"
    TITLE_DATE = "title_date"
    NONE = "none"


class JobType(str, Enum):
    """Pipeline stages, declared in the order a document passes through them."""

    CHUNK = "chunk"
    EMBED = "embed"
    ENRICH = "enrich"

    @property
    def next_stage(self) -> Optional["JobType"]:
        stages = list(JobType)
        pos = stages.index(self)
        return stages[pos + 1] if pos + 1 < len(stages) else None


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


# --- Chunks & Sources ---------------------------------------------------------

class ChunkLocator(BaseModel):
    """Structured position of a chunk inside a legal act."""

    article: Optional[str] = None
    part: Optional[str] = None
    point: Optional[str] = None
    section_title: Optional[str] = None


class Chunk(BaseModel):
    """
    A contiguous, offset-addressed slice of a document's normalized text.

    Offsets are deliberately not validated here: chunk sets arrive from
    external extractors and the auditor is the place that reports bad ones.
    """

    chunk_index: int
    chunk_type: ChunkType = ChunkType.TEXT
    chunk_text: str
    char_start: int
    char_end: int
    label: Optional[str] = None
    locator: Optional[ChunkLocator] = None
    chunk_hash: Optional[str] = None     # SHA-256 of chunk_text

    @classmethod
    def build(
        cls,
        chunk_index: int,
        chunk_type: ChunkType,
        text: str,
        char_start: int,
        label: Optional[str] = None,
        locator: Optional[ChunkLocator] = None,
    ) -> "Chunk":
        return cls(
            chunk_index=chunk_index,
            chunk_type=chunk_type,
            chunk_text=text,
            char_start=char_start,
            char_end=char_start + len(text),
            label=label,
            locator=locator,
            chunk_hash=sha256_hex(text),
        )

    @property
    def length(self) -> int:
        return self.char_end - self.char_start


class SourceRecord(BaseModel):
    """
    One extraction pass over one physical file (TXT or PDF).

    Extractors emit camelCase JSON (sourceKey, fileName, ...); both spellings
    are accepted.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source_key: str
    file_name: str
    mime_type: str = "text/plain"
    title: str = ""
    content_text: str = ""
    source_url: Optional[str] = None
    date_adopted: Optional[str] = None   # "YYYY-MM-DD"
    chunks: list[Chunk] = Field(default_factory=list)

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf" or self.file_name.lower().endswith(".pdf")


# --- Matching & Merging -------------------------------------------------------

class MatchResult(BaseModel):
    """Verdict of comparing two sources - ephemeral, never persisted."""

    matched: bool
    rule: MatchRuleName = MatchRuleName.NONE
    match_key: Optional[str] = None
    fields_used: list[str] = Field(default_factory=list)


class MergedSources(BaseModel):
    primary: SourceRecord
    secondary: SourceRecord


class MergedDocument(BaseModel):
    """Canonical chunk set built from a matched TXT/PDF pair."""

    title: str
    primary_text: str
    text_chunks: list[Chunk] = Field(default_factory=list)
    table_chunks: list[Chunk] = Field(default_factory=list)
    all_chunks: list[Chunk] = Field(default_factory=list)
    match: MatchResult
    sources: MergedSources


# --- Audit Metrics ------------------------------------------------------------

class BoundaryViolation(BaseModel):
    chunk_index: int
    issue: str


class GapViolation(BaseModel):
    between: tuple[int, int]
    gap_start: int
    gap_end: int
    gap_size: int


class OverlapViolation(BaseModel):
    between: tuple[int, int]
    overlap_start: int
    overlap_end: int
    overlap_size: int
    overlap_ratio: float


class ChunkAuditMetrics(BaseModel):
    """Integrity metrics for one (document, table) chunk set - recomputed on demand."""

    document_id: str
    source_table: str
    chunk_count: int = 0
    document_chars: int = 0
    total_chunk_chars: int = 0
    avg_size: int = 0
    min_size: int = 0
    max_size: int = 0
    coverage_ratio: float = 0.0
    coverage_ok: bool = False
    gap_violations: list[GapViolation] = Field(default_factory=list)
    overlap_violations: list[OverlapViolation] = Field(default_factory=list)
    boundary_violations: list[BoundaryViolation] = Field(default_factory=list)
    index_continuity_ok: bool = True
    missing_indices: list[int] = Field(default_factory=list)
    duplicate_hashes: list[str] = Field(default_factory=list)
    empty_chunks: list[int] = Field(default_factory=list)

    @property
    def is_indexable(self) -> bool:
        """True when the chunk set is safe to hand to the embedding stage."""
        return (
            self.coverage_ok
            and self.index_continuity_ok
            and not self.boundary_violations
            and not self.overlap_violations
            and not self.duplicate_hashes
            and not self.empty_chunks
        )


# --- Job Queue ----------------------------------------------------------------

class PipelineJob(BaseModel):
    """A row of the job queue, detached from the ORM session."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    document_id: str
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    next_run_at: datetime
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
