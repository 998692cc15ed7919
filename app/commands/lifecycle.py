"""
Helpers shared by the job commands: audit events, execution bookkeeping,
worker/recurring counters, outbox writes and the retry / dead-letter policy.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOB_FAILURES
from app.commands.queues import get_queue_config
from app.db.models import Job, JobEventLog, JobExecution, JobLease, JobWorker, OutboxEvent, RecurringJob
from app.domain.retry import calculate_next_run
from app.domain.states import JobEvent, JobStatus
from app.utils.clock import as_utc

logger = logging.getLogger(__name__)

def record_event(session: AsyncSession, job_id, event_type: JobEvent, now: datetime, **meta: Any) -> None:
    session.add(JobEventLog(job_id=job_id, event_type=event_type, timestamp=now, meta=meta))

def job_snapshot(job: Job) -> dict[str, Any]:
    return {
        "job_id": str(job.id),
        "queue_name": job.queue_name,
        "job_type": job.job_type,
        "job_name": job.job_name,
        "status": str(job.status),
        "attempt_count": job.attempt_count,
        "max_attempts": job.max_attempts,
        "agency_id": job.agency_id,
    }

def add_outbox(session: AsyncSession, event_type: str, job: Job, **extra: Any) -> None:
    session.add(OutboxEvent(
        event_type=event_type,
        agency_id=job.agency_id,
        payload={**job_snapshot(job), **extra},
    ))

async def close_execution(
    session: AsyncSession,
    job: Job,
    status: JobStatus,
    now: datetime,
    result: Any = None,
    error: Optional[str] = None,
    error_details: Optional[dict[str, Any]] = None,
) -> Optional[int]:
    """Closes the open execution row for the current attempt; returns its duration in ms."""
    stmt = (
        select(JobExecution)
        .where(JobExecution.job_id == job.id, JobExecution.completed_at.is_(None))
        .order_by(JobExecution.attempt_number.desc())
        .limit(1)
    )
    execution = await session.scalar(stmt)
    if execution is None:
        return None

    duration_ms = max(0, int((now - as_utc(execution.started_at)).total_seconds() * 1000))
    execution.completed_at = now
    execution.duration_ms = duration_ms
    execution.status = status
    execution.result = result
    execution.error_message = error
    execution.error_details = error_details
    return duration_ms

async def release_lease(session: AsyncSession, job_id) -> None:
    await session.execute(delete(JobLease).where(JobLease.job_id == job_id))

async def update_worker_counters(
    session: AsyncSession,
    worker_id: Optional[str],
    succeeded: bool,
    duration_ms: Optional[int],
    now: datetime,
) -> None:
    if not worker_id:
        return
    values: dict[str, Any] = {
        "last_job_at": now,
        "total_processing_time_ms": JobWorker.total_processing_time_ms + (duration_ms or 0),
    }
    if succeeded:
        values["jobs_processed"] = JobWorker.jobs_processed + 1
    else:
        values["jobs_failed"] = JobWorker.jobs_failed + 1
    await session.execute(update(JobWorker).where(JobWorker.worker_id == worker_id).values(**values))

async def update_recurring_stats(session: AsyncSession, job: Job, succeeded: bool) -> None:
    if not job.recurring_job_id:
        return
    column = RecurringJob.successful_runs if succeeded else RecurringJob.failed_runs
    await session.execute(
        update(RecurringJob)
        .where(RecurringJob.id == job.recurring_job_id)
        .values({column.key: column + 1})
    )

async def apply_failure(
    session: AsyncSession,
    job: Job,
    error: str,
    now: datetime,
    error_details: Optional[dict[str, Any]] = None,
    retryable: bool = True,
    reason: str = "error",
) -> JobStatus:
    """
    Moves a processing job out of PROCESSING after a failed attempt.

    retrying  -> attempts remain and the error is retryable; scheduled after backoff
    failed    -> otherwise; moved to the queue's dead letter queue when configured
                 and the attempt threshold (or the attempt budget) is reached
    """
    config = await get_queue_config(session, job.queue_name)

    duration_ms = await close_execution(
        session, job, JobStatus.FAILED, now, error=error, error_details=error_details
    )
    await release_lease(session, job.id)
    await update_worker_counters(session, job.worker_id, False, duration_ms, now)

    job.error_message = error
    job.error_details = error_details
    job.updated_at = now

    meta = {
        "error": error,
        "reason": reason,
        "attempt": job.attempt_count,
        "max_attempts": job.max_attempts,
        "worker_id": job.worker_id,
    }

    if retryable and job.attempt_count < job.max_attempts:
        job.status = JobStatus.RETRYING
        job.scheduled_at = calculate_next_run(
            job.attempt_count,
            config.retry_delay_base_seconds,
            config.retry_delay_max_seconds,
            now=now,
        )
        JOB_FAILURES.labels(queue_name=job.queue_name, type="retryable").inc()
        record_event(session, job.id, JobEvent.RETRIED, now, next_run_at=job.scheduled_at.isoformat(), **meta)
        return job.status

    job.status = JobStatus.FAILED
    job.failed_at = now
    await update_recurring_stats(session, job, succeeded=False)

    dead_letter = config.dead_letter_queue_name
    exhausted = job.attempt_count >= job.max_attempts
    if dead_letter and (exhausted or job.attempt_count >= config.dead_letter_after_attempts):
        origin = job.queue_name
        job.queue_name = dead_letter
        job.context = {
            **(job.context or {}),
            "dead_letter": {"original_queue": origin, "reason": error, "at": now.isoformat()},
        }
        JOB_FAILURES.labels(queue_name=origin, type="dead_letter").inc()
        record_event(session, job.id, JobEvent.DEAD_LETTERED, now, original_queue=origin, **meta)
        add_outbox(session, "job.dead_lettered", job, error=error, original_queue=origin)
        logger.warning(f"Job {job.id} dead-lettered from {origin} to {dead_letter}: {error}")
    else:
        JOB_FAILURES.labels(queue_name=job.queue_name, type="final").inc()
        record_event(session, job.id, JobEvent.FAILED, now, **meta)
        add_outbox(session, "job.failed", job, error=error)

    return job.status
