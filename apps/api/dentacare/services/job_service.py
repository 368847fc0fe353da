"""Job service - business logic for background job scheduling and processing."""

from datetime import datetime

from sqlalchemy.orm import Session

from dentacare.db.enums import JobStatus, JobType
from dentacare.db.models import Job
from dentacare.db.session import is_postgres
from dentacare.db.types import utcnow


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
) -> Job:
    """
    Schedule a new background job inside the caller's transaction.

    If run_at is None, the job runs immediately. The row is flushed, not
    committed: it becomes visible to the worker together with the state
    change that produced it.
    """
    job = Job(
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or utcnow(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.flush()
    return job


def job_exists(db: Session, idempotency_key: str) -> bool:
    return (
        db.query(Job.id).filter(Job.idempotency_key == idempotency_key).first()
        is not None
    )


def claim_pending_jobs(db: Session, now: datetime | None = None, limit: int = 10) -> list[Job]:
    """
    Lock and mark a batch of due jobs as running.

    On PostgreSQL, rows locked by another worker are skipped.
    """
    now = now or utcnow()
    query = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
    )
    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)
    jobs = query.all()
    for job in jobs:
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
    db.commit()
    return jobs


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = utcnow()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry.
    """
    job.last_error = error[:2000]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
    db.commit()
    db.refresh(job)
    return job
