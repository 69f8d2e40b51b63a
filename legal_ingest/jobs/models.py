"""
Job queue ORM model.

One row per (document, stage).  Stage workers claim rows by moving them to
PROCESSING with a lease; an expired lease makes the row reclaimable without a
status change.

Dependencies: sqlalchemy
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from legal_ingest.schemas import JobStatus, JobType
from legal_ingest.utils.helpers import utc_now


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class PipelineJobModel(Base):
    """
    Attributes:
        document_id: id of the document row the stage works on
        job_type: CHUNK / EMBED / ENRICH
        status: PENDING -> PROCESSING -> DONE | FAILED (retry)
        attempts: failed attempts so far; rows at max_attempts are no longer ready
        next_run_at: earliest time the row may be claimed (retry backoff)
        lease_expires_at: set on claim; a PROCESSING row past it is stale
    """

    __tablename__ = "pipeline_jobs"
    __table_args__ = (
        UniqueConstraint("document_id", "job_type", name="uq_pipeline_jobs_document_stage"),
        Index("ix_pipeline_jobs_backlog", "job_type", "status", "next_run_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    document_id: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[JobType] = mapped_column(
        Enum(JobType, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PipelineJobModel {self.job_type.value}:{self.document_id} "
            f"status={self.status.value} attempts={self.attempts}>"
        )
