"""
Durable job queue backed by the ``jobs`` table.

Workers compete for rows with ``SELECT ... FOR UPDATE SKIP LOCKED``; the claim itself is a
conditional UPDATE so a backend without skip-locked support (SQLite in tests) still cannot
hand the same job to two workers.

Every write after the claim is fenced on (status=processing, locked_by=worker): a worker whose
lease expired and was taken over, or whose job was failed by ``fail_exhausted_leases``, gets
LeaseLostError instead of overwriting the row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from upload_scanner.core.config import settings
from upload_scanner.models.job import Job, JobStage, JobStatus, JobType, utcnow


logger = logging.getLogger(__name__)

# Lost claims are only possible without skip-locked support; bound the retries anyway.
MAX_CLAIM_ATTEMPTS = 5
MAX_ERROR_LENGTH = 1000


class LeaseLostError(Exception):
    """The job was reclaimed or finished by someone else; our outcome must not be written."""


def _clip_error(message: str | None) -> str | None:
    if not message:
        return None
    s = message.strip()
    if len(s) <= MAX_ERROR_LENGTH:
        return s
    return s[: MAX_ERROR_LENGTH - 3] + "..."


def _eligible(now: datetime):
    pending = Job.status == JobStatus.pending
    lease_expired = and_(
        Job.status == JobStatus.processing,
        Job.lease_expires_at.is_not(None),
        Job.lease_expires_at < now,
    )
    return and_(or_(pending, lease_expired), Job.attempts < Job.max_attempts)


def enqueue(
    db: Session,
    job_type: JobType,
    payload: dict[str, Any],
    *,
    max_attempts: int | None = None,
) -> Job:
    """
    Add a pending job to the caller's transaction. Does NOT commit: the caller commits the
    job together with the entity it describes.
    """
    now = utcnow()
    job = Job(
        type=job_type,
        payload=payload,
        status=JobStatus.pending,
        attempts=0,
        max_attempts=max_attempts if max_attempts is not None else settings.JOB_MAX_ATTEMPTS,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()
    logger.debug("Enqueued job %s type=%s", job.id, job_type.value)
    return job


def try_dequeue(
    db: Session,
    worker_id: str,
    *,
    job_type: JobType = JobType.virus_scan,
    lease_seconds: int | None = None,
) -> Job | None:
    """
    Lease the oldest eligible job of ``job_type`` to ``worker_id`` and commit.

    Eligible: pending, or processing with an expired lease, and attempts < max_attempts.
    Returns None when nothing is eligible; the caller should back off.
    """
    lease = timedelta(seconds=lease_seconds if lease_seconds is not None else settings.JOB_LEASE_SECONDS)

    for _ in range(MAX_CLAIM_ATTEMPTS):
        now = utcnow()
        candidate_id = db.execute(
            select(Job.id)
            .where(Job.type == job_type, _eligible(now))
            .order_by(Job.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        ).scalar_one_or_none()

        if candidate_id is None:
            db.rollback()
            return None

        result = db.execute(
            update(Job)
            .where(Job.id == candidate_id, _eligible(now))
            .values(
                status=JobStatus.processing,
                locked_at=now,
                locked_by=worker_id,
                lease_expires_at=now + lease,
                attempts=Job.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Someone else claimed it between our read and our write.
            db.rollback()
            logger.debug("Lost claim on job %s (worker %s); retrying", candidate_id, worker_id)
            continue

        db.commit()
        job = db.get(Job, candidate_id, populate_existing=True)
        logger.info(
            "Dequeued job %s (attempts=%s/%s) for worker %s",
            job.id,
            job.attempts,
            job.max_attempts,
            worker_id,
            extra={"job_id": job.id, "worker_id": worker_id},
        )
        return job

    db.rollback()
    return None


def _fenced_update(db: Session, job: Job, worker_id: str, **values: Any) -> None:
    """
    Write ``values`` only while ``worker_id`` still holds the job. Commits on success; on a
    lost lease rolls back everything pending in ``db`` and raises LeaseLostError.
    """
    job_id = job.id
    result = db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.processing,
            Job.locked_by == worker_id,
        )
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise LeaseLostError(f"Worker {worker_id} no longer holds job {job_id}")
    db.commit()


def set_stage(db: Session, job: Job, stage: JobStage, *, worker_id: str) -> None:
    """
    Record progress and extend the lease (heartbeat).
    """
    lease = timedelta(seconds=settings.JOB_LEASE_SECONDS)
    _fenced_update(db, job, worker_id, stage=stage, lease_expires_at=utcnow() + lease)


def complete(db: Session, job: Job, *, worker_id: str) -> None:
    """
    Mark the job completed. Commits whatever else is pending in ``db`` (the domain updates
    the job produced) in the same transaction, or none of it if the lease was lost.
    """
    job_id = job.id
    _fenced_update(
        db,
        job,
        worker_id,
        status=JobStatus.completed,
        stage=JobStage.done,
        last_error=None,
    )
    logger.info("Job %s completed", job_id, extra={"job_id": job_id})


def fail(db: Session, job: Job, error: str | None = None, *, worker_id: str) -> None:
    job_id = job.id
    _fenced_update(db, job, worker_id, status=JobStatus.failed, last_error=_clip_error(error))
    logger.info("Marked job %s as failed", job_id, extra={"job_id": job_id})


def requeue(db: Session, job: Job, error: str | None = None, *, worker_id: str) -> None:
    """
    Return a job to ``pending`` so another dequeue can pick it up. Attempts are kept.
    """
    job_id = job.id
    attempts, max_attempts = job.attempts, job.max_attempts
    if attempts >= max_attempts:
        raise ValueError(f"Job {job_id} has no attempts left ({attempts}/{max_attempts})")
    _fenced_update(
        db,
        job,
        worker_id,
        status=JobStatus.pending,
        locked_at=None,
        locked_by=None,
        lease_expires_at=None,
        last_error=_clip_error(error),
    )
    logger.info(
        "Requeued job %s (attempts=%s/%s)",
        job_id,
        attempts,
        max_attempts,
        extra={"job_id": job_id},
    )


def fail_exhausted_leases(db: Session, *, job_type: JobType = JobType.virus_scan) -> int:
    """
    Jobs whose worker died mid-flight stay ``processing``. Once the lease is gone and no
    attempts are left they will never be picked up again, so fail them.
    """
    now = utcnow()
    result = db.execute(
        update(Job)
        .where(
            Job.type == job_type,
            Job.status == JobStatus.processing,
            Job.lease_expires_at.is_not(None),
            Job.lease_expires_at < now,
            Job.attempts >= Job.max_attempts,
        )
        .values(
            status=JobStatus.failed,
            last_error="Lease expired with no attempts left",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    count = result.rowcount or 0
    if count:
        logger.warning("Failed %s job(s) with expired leases and no attempts left", count)
    return count
