"""
Durable job queue stored in the ``jobs`` table.

Jobs survive restarts: a job is ``available`` until a worker claims it,
``executing`` while leased, and ends ``completed``, ``cancelled`` or
``discarded``. Leases that expire (worker crash) are rescued back to
``available``.
"""

from __future__ import annotations

import random
import typing as t
from datetime import datetime, timedelta
from enum import StrEnum

import structlog
from sqlalchemy import delete, select, update

from batchrelay.db.models import Job, utcnow
from batchrelay.status import JobState

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.db.session import Database
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)

FINISHED_JOB_STATES = (JobState.COMPLETED, JobState.CANCELLED, JobState.DISCARDED)


class JobKind(StrEnum):
    UPLOAD_BATCH = "upload_batch"
    CREATE_REMOTE_JOB = "create_remote_job"
    POLL_BATCH = "poll_batch"
    DOWNLOAD_RESULTS = "download_results"
    PROCESS_EXPIRED = "process_expired"
    DELIVER = "deliver"
    DELETE_REMOTE_FILE = "delete_remote_file"


def retry_delay(attempt: int, *, base_seconds: float = 2.0, max_seconds: float = 300.0) -> timedelta:
    """Capped exponential delay with full jitter on the upper half."""
    ceiling = min(base_seconds * 2 ** min(attempt - 1, 32), max_seconds)
    return timedelta(seconds=random.uniform(ceiling / 2, ceiling))


class JobQueue:
    """
    Parameters
    ----------
    database : Database
        Database holding the ``jobs`` table.
    settings : Settings
        Lease length, attempt bound and retention.
    """

    def __init__(self, database: "Database", settings: "Settings") -> None:
        self.database = database
        self.lease = timedelta(seconds=settings.job_lease_seconds)
        self.max_attempts = settings.job_max_attempts
        self.retention = timedelta(seconds=settings.job_retention_seconds)

    def enqueue(
        self,
        session: "Session",
        kind: str,
        *,
        batch_id: int | None = None,
        request_id: int | None = None,
        delay: timedelta | float | None = None,
        unique: bool = True,
        payload: str | None = None,
    ) -> Job | None:
        """
        Add a job in the caller's session; the caller commits.

        Parameters
        ----------
        session : Session
            Session shared with the state change that triggered the job.
        kind : str
            Job kind, see ``JobKind``.
        batch_id : int | None
            Subject batch.
        request_id : int | None
            Subject request.
        delay : timedelta | float | None
            Delay before the job becomes due, seconds when a float.
        unique : bool
            Skip when an available job of the same kind and subject exists.
        payload : str | None
            Free-form argument, e.g. a remote file id.

        Returns
        -------
        Job | None
            The new job, ``None`` when skipped as a duplicate.
        """
        if isinstance(delay, (int, float)):
            delay = timedelta(seconds=delay)
        scheduled_at = utcnow() + (delay or timedelta(0))

        if unique:
            stmt = select(Job.id).where(
                Job.kind == kind,
                Job.state == JobState.AVAILABLE,
                Job.batch_id.is_(None) if batch_id is None else Job.batch_id == batch_id,
                Job.request_id.is_(None) if request_id is None else Job.request_id == request_id,
                Job.payload.is_(None) if payload is None else Job.payload == payload,
            )
            if session.execute(stmt.limit(1)).first() is not None:
                log.debug(
                    event="Skipped duplicate job",
                    kind=kind,
                    batch_id=batch_id,
                    request_id=request_id,
                )
                return None

        job = Job(
            kind=str(kind),
            batch_id=batch_id,
            request_id=request_id,
            payload=payload,
            state=JobState.AVAILABLE,
            attempt=0,
            max_attempts=self.max_attempts,
            scheduled_at=scheduled_at,
        )
        session.add(job)
        log.debug(
            event="Enqueued job",
            kind=kind,
            batch_id=batch_id,
            request_id=request_id,
            scheduled_at=scheduled_at.isoformat(),
        )
        return job

    def claim(self, limit: int = 1, *, now: datetime | None = None) -> list[Job]:
        """
        Lease up to ``limit`` due jobs, oldest schedule first.

        Returns
        -------
        list[Job]
            Detached jobs now ``executing``; ``attempt`` already counts this run.
        """
        now = now or utcnow()
        with self.database.session() as session:
            jobs = list(
                session.execute(
                    select(Job)
                    .where(Job.state == JobState.AVAILABLE, Job.scheduled_at <= now)
                    .order_by(Job.scheduled_at, Job.id)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                ).scalars()
            )
            for job in jobs:
                job.state = JobState.EXECUTING
                job.attempt += 1
                job.leased_until = now + self.lease
            session.commit()
            return jobs

    def _finish(self, job_id: int, state: JobState, *, error: str | None = None) -> None:
        with self.database.session() as session:
            job = session.get(Job, job_id)
            if job is None:
                return
            job.state = state
            job.leased_until = None
            job.completed_at = utcnow()
            if error is not None:
                job.last_error = error
            session.commit()

    def complete(self, job_id: int) -> None:
        self._finish(job_id, JobState.COMPLETED)

    def discard(self, job_id: int, error: str) -> None:
        self._finish(job_id, JobState.DISCARDED, error=error)

    def fail(self, job_id: int, error: str) -> JobState | None:
        """
        Record a failed run; retry later or discard once attempts are exhausted.

        Returns
        -------
        JobState | None
            The job's new state, ``None`` if the job no longer exists.
        """
        with self.database.session() as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            job.last_error = error
            job.leased_until = None
            if job.state == JobState.CANCELLED:
                pass
            elif job.attempt >= job.max_attempts:
                job.state = JobState.DISCARDED
                job.completed_at = utcnow()
                log.error(
                    event="Job discarded after max attempts",
                    job_id=job.id,
                    kind=job.kind,
                    attempt=job.attempt,
                    error=error,
                )
            else:
                job.state = JobState.AVAILABLE
                job.scheduled_at = utcnow() + retry_delay(job.attempt)
            session.commit()
            return job.state

    def snooze(self, job_id: int, delay: timedelta | float) -> None:
        """Put an executing job back without counting the run as an attempt."""
        if isinstance(delay, (int, float)):
            delay = timedelta(seconds=delay)
        with self.database.session() as session:
            job = session.get(Job, job_id)
            if job is None or job.state != JobState.EXECUTING:
                return
            job.state = JobState.AVAILABLE
            job.attempt = max(job.attempt - 1, 0)
            job.leased_until = None
            job.scheduled_at = utcnow() + delay
            session.commit()

    def cancel_for_batch(self, session: "Session", batch_id: int) -> int:
        """Cancel the batch's queued jobs in the caller's session."""
        result = session.execute(
            update(Job)
            .where(Job.batch_id == batch_id, Job.state == JobState.AVAILABLE)
            .values(state=JobState.CANCELLED, completed_at=utcnow())
        )
        return result.rowcount or 0

    def cancel_for_requests(self, session: "Session", request_ids: t.Sequence[int]) -> int:
        if not request_ids:
            return 0
        result = session.execute(
            update(Job)
            .where(Job.request_id.in_(request_ids), Job.state == JobState.AVAILABLE)
            .values(state=JobState.CANCELLED, completed_at=utcnow())
        )
        return result.rowcount or 0

    def rescue_expired_leases(self, *, now: datetime | None = None) -> int:
        """Return jobs whose worker vanished to ``available``."""
        now = now or utcnow()
        with self.database.session() as session:
            result = session.execute(
                update(Job)
                .where(Job.state == JobState.EXECUTING, Job.leased_until < now)
                .values(state=JobState.AVAILABLE, leased_until=None, scheduled_at=now)
            )
            session.commit()
        rescued = result.rowcount or 0
        if rescued:
            log.warning(event="Rescued jobs with expired leases", count=rescued)
        return rescued

    def prune(self, *, max_age: timedelta | None = None, now: datetime | None = None) -> int:
        """Delete finished jobs older than ``max_age`` (job retention by default)."""
        cutoff = (now or utcnow()) - (max_age or self.retention)
        with self.database.session() as session:
            result = session.execute(
                delete(Job).where(Job.state.in_(FINISHED_JOB_STATES), Job.completed_at < cutoff)
            )
            session.commit()
        return result.rowcount or 0

    def pending(
        self,
        *,
        kind: str | None = None,
        batch_id: int | None = None,
        request_id: int | None = None,
    ) -> list[Job]:
        """List available and executing jobs, optionally filtered."""
        stmt = select(Job).where(Job.state.in_((JobState.AVAILABLE, JobState.EXECUTING)))
        if kind is not None:
            stmt = stmt.where(Job.kind == kind)
        if batch_id is not None:
            stmt = stmt.where(Job.batch_id == batch_id)
        if request_id is not None:
            stmt = stmt.where(Job.request_id == request_id)
        with self.database.session() as session:
            return list(session.execute(stmt.order_by(Job.scheduled_at, Job.id)).scalars())
