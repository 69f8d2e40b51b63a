"""
Job Repository
---------------
The job queue is the single shared mutable resource of the pipeline.  The
orchestrator only reads aggregate counts; stage workers claim, complete and
fail rows through this interface.

Claim contract: claim() must be atomic with respect to concurrent claimers -
two workers calling claim() at the same time never receive the same job.
SqlJobRepository honours it with an optimistic conditional UPDATE per
candidate row (portable to SQLite and PostgreSQL): a row is only returned when
the UPDATE that re-checks its claimability affected exactly one row.

Lease contract: a worker passes the lease_expires_at it was handed by claim()
to complete() / fail().  The update only applies while the row is still
PROCESSING under that same lease; once another worker has reclaimed the job,
the late call raises LeaseLostError and leaves the row untouched.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import and_, create_engine, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from legal_ingest.jobs.models import Base, PipelineJobModel
from legal_ingest.schemas import JobStatus, JobType, PipelineJob
from legal_ingest.utils.helpers import utc_now

DEFAULT_MAX_ATTEMPTS = 5
MAX_ERROR_CHARS = 500


class JobNotFoundError(LookupError):
    """complete() / fail() was called with an unknown job id."""


class LeaseLostError(RuntimeError):
    """The caller's lease expired and the job was reclaimed by another worker."""


# --- Interface ----------------------------------------------------------------

class JobRepository(ABC):
    """Storage-agnostic job queue used by the orchestrator and the stage workers."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    clock: Callable[[], datetime] = staticmethod(utc_now)

    @abstractmethod
    def count_ready(self, job_type: JobType) -> int:
        """PENDING/FAILED rows under the attempt cap whose next_run_at has passed."""

    @abstractmethod
    def count_stale(self, job_type: JobType) -> int:
        """PROCESSING rows whose lease has expired."""

    def backlog(self, job_type: JobType) -> int:
        return self.count_ready(job_type) + self.count_stale(job_type)

    @abstractmethod
    def enqueue(self, document_id: str, job_type: JobType) -> PipelineJob:
        """Create (or re-arm a DONE) job for a document entering a stage."""

    @abstractmethod
    def claim(self, job_type: JobType, limit: int, lease: timedelta) -> list[PipelineJob]:
        """Atomically move up to `limit` ready or stale jobs to PROCESSING under a lease."""

    @abstractmethod
    def complete(self, job_id: str, lease_expires_at: Optional[datetime] = None) -> PipelineJob:
        """Mark DONE; with lease_expires_at, only while the caller still holds that lease."""

    @abstractmethod
    def fail(
        self,
        job_id: str,
        backoff: timedelta,
        error: str = "",
        lease_expires_at: Optional[datetime] = None,
    ) -> PipelineJob:
        """Bump attempts and schedule a retry; same lease check as complete()."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[PipelineJob]:
        ...

    @abstractmethod
    def status_counts(self) -> dict[str, dict[str, int]]:
        ...


# --- Engine / Sessions --------------------------------------------------------

def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """Build an engine for `database_url`, create the schema, return a session factory."""
    kwargs: dict = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)


# --- SQLAlchemy implementation -------------------------------------------------

class SqlJobRepository(JobRepository):
    """JobRepository backed by the `pipeline_jobs` table."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.clock = clock

    # --- Predicates -----------------------------------------------------------

    def _ready(self, now: datetime):
        return and_(
            PipelineJobModel.status.in_([JobStatus.PENDING, JobStatus.FAILED]),
            PipelineJobModel.attempts < self.max_attempts,
            PipelineJobModel.next_run_at <= now,
        )

    @staticmethod
    def _stale(now: datetime):
        return and_(
            PipelineJobModel.status == JobStatus.PROCESSING,
            PipelineJobModel.lease_expires_at.is_not(None),
            PipelineJobModel.lease_expires_at < now,
        )

    # --- Counts ---------------------------------------------------------------

    def _count(self, job_type: JobType, predicate) -> int:
        stmt = (
            select(func.count())
            .select_from(PipelineJobModel)
            .where(PipelineJobModel.job_type == job_type, predicate)
        )
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one()

    def count_ready(self, job_type: JobType) -> int:
        return self._count(job_type, self._ready(self.clock()))

    def count_stale(self, job_type: JobType) -> int:
        return self._count(job_type, self._stale(self.clock()))

    def status_counts(self) -> dict[str, dict[str, int]]:
        stmt = select(
            PipelineJobModel.job_type, PipelineJobModel.status, func.count()
        ).group_by(PipelineJobModel.job_type, PipelineJobModel.status)
        counts: dict[str, dict[str, int]] = {
            jt.value: {st.value: 0 for st in JobStatus} for jt in JobType
        }
        with self._session_factory() as session:
            for job_type, status, n in session.execute(stmt):
                counts[job_type.value][status.value] = n
        return counts

    # --- Mutations ------------------------------------------------------------

    def enqueue(self, document_id: str, job_type: JobType) -> PipelineJob:
        try:
            return self._enqueue(document_id, job_type)
        except IntegrityError:
            # A concurrent enqueue inserted the same (document, stage) first
            return self._enqueue(document_id, job_type)

    def _enqueue(self, document_id: str, job_type: JobType) -> PipelineJob:
        now = self.clock()
        with self._session_factory.begin() as session:
            row = session.execute(
                select(PipelineJobModel).where(
                    PipelineJobModel.document_id == document_id,
                    PipelineJobModel.job_type == job_type,
                )
            ).scalar_one_or_none()

            if row is None:
                row = PipelineJobModel(
                    document_id=document_id,
                    job_type=job_type,
                    status=JobStatus.PENDING,
                    attempts=0,
                    next_run_at=now,
                    created_at=now,
                )
                session.add(row)
            elif row.status == JobStatus.DONE:
                row.status = JobStatus.PENDING
                row.attempts = 0
                row.next_run_at = now
                row.lease_expires_at = None
                row.completed_at = None
                row.last_error = None

            session.flush()
            return PipelineJob.model_validate(row)

    def claim(self, job_type: JobType, limit: int, lease: timedelta) -> list[PipelineJob]:
        if limit <= 0:
            return []
        now = self.clock()
        claimable = or_(self._ready(now), self._stale(now))

        with self._session_factory.begin() as session:
            candidate_ids = session.execute(
                select(PipelineJobModel.id)
                .where(PipelineJobModel.job_type == job_type, claimable)
                .order_by(PipelineJobModel.next_run_at, PipelineJobModel.created_at)
                .limit(limit)
            ).scalars().all()

            claimed: list[str] = []
            for job_id in candidate_ids:
                result = session.execute(
                    update(PipelineJobModel)
                    .where(PipelineJobModel.id == job_id, claimable)
                    .values(status=JobStatus.PROCESSING, lease_expires_at=now + lease)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(job_id)

            if not claimed:
                return []

            rows = session.execute(
                select(PipelineJobModel)
                .where(PipelineJobModel.id.in_(claimed))
                .order_by(PipelineJobModel.next_run_at, PipelineJobModel.created_at)
            ).scalars().all()
            jobs = [PipelineJob.model_validate(r) for r in rows]

        logger.debug(f"[Jobs] claimed {len(jobs)}/{len(candidate_ids)} {job_type.value} job(s)")
        return jobs

    def _mutate(self, job_id: str, held_lease: Optional[datetime], **values) -> PipelineJob:
        stmt = update(PipelineJobModel).where(PipelineJobModel.id == job_id)
        if held_lease is not None:
            stmt = stmt.where(
                PipelineJobModel.status == JobStatus.PROCESSING,
                PipelineJobModel.lease_expires_at == held_lease,
            )

        with self._session_factory.begin() as session:
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if session.get(PipelineJobModel, job_id) is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                raise LeaseLostError(
                    f"Lease on job {job_id} (until {held_lease}) is no longer held"
                )
            return PipelineJob.model_validate(session.get(PipelineJobModel, job_id))

    def complete(self, job_id: str, lease_expires_at: Optional[datetime] = None) -> PipelineJob:
        return self._mutate(
            job_id,
            lease_expires_at,
            status=JobStatus.DONE,
            completed_at=self.clock(),
            lease_expires_at=None,
            last_error=None,
        )

    def fail(
        self,
        job_id: str,
        backoff: timedelta,
        error: str = "",
        lease_expires_at: Optional[datetime] = None,
    ) -> PipelineJob:
        job = self._mutate(
            job_id,
            lease_expires_at,
            status=JobStatus.FAILED,
            attempts=PipelineJobModel.attempts + 1,
            next_run_at=self.clock() + backoff,
            lease_expires_at=None,
            last_error=error[:MAX_ERROR_CHARS] or None,
        )
        if job.attempts >= self.max_attempts:
            logger.warning(
                f"[Jobs] {job.job_type.value}:{job.document_id} exhausted "
                f"{job.attempts}/{self.max_attempts} attempts - no further retries"
            )
        return job

    def get(self, job_id: str) -> Optional[PipelineJob]:
        with self._session_factory() as session:
            row = session.get(PipelineJobModel, job_id)
            return PipelineJob.model_validate(row) if row is not None else None
