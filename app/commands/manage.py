import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import QUEUE_DEPTH
from app.commands.lifecycle import close_execution, record_event, release_lease
from app.db.models import Job, JobDependency, JobEventLog, JobExecution
from app.domain.errors import InvalidJobStateError, JobNotFoundError
from app.domain.states import JobEvent, JobStatus, can_transition
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500

async def get_job(session: AsyncSession, job_id: UUID, agency_id: Optional[str] = None) -> Job:
    """Fetches a job; with agency_id set, jobs owned by other agencies look missing."""
    job = await session.get(Job, job_id)
    if not job or (agency_id is not None and job.agency_id != agency_id):
        raise JobNotFoundError(job_id)
    return job

async def list_jobs(
    session: AsyncSession,
    queue: Optional[str] = None,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    agency_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    stmt = select(Job).order_by(Job.created_at.desc())

    if queue:
        stmt = stmt.where(Job.queue_name == queue)
    if status:
        stmt = stmt.where(Job.status == status)
    if job_type:
        stmt = stmt.where(Job.job_type == job_type)
    if agency_id:
        stmt = stmt.where(Job.agency_id == agency_id)

    limit = max(1, min(limit, MAX_PAGE_SIZE))
    stmt = stmt.limit(limit).offset(max(0, offset))
    return list((await session.scalars(stmt)).all())

async def list_dependencies(session: AsyncSession, job_id: UUID) -> list[UUID]:
    stmt = select(JobDependency.depends_on_id).where(JobDependency.job_id == job_id)
    return list((await session.scalars(stmt)).all())

async def list_executions(session: AsyncSession, job_id: UUID) -> list[JobExecution]:
    stmt = select(JobExecution).where(JobExecution.job_id == job_id).order_by(JobExecution.attempt_number)
    return list((await session.scalars(stmt)).all())

async def list_job_events(session: AsyncSession, job_id: UUID) -> list[JobEventLog]:
    stmt = select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
    return list((await session.scalars(stmt)).all())

async def cancel_job(session: AsyncSession, job_id: UUID, agency_id: Optional[str] = None) -> Job:
    """
    Cancels a pending, retrying or processing job.
    A processing job loses its lease; the worker finds out on its next
    heartbeat or ack. Cancelling twice is a no-op.
    """
    job = await get_job(session, job_id, agency_id)

    if job.status == JobStatus.CANCELLED:
        return job
    if not can_transition(job.status, JobStatus.CANCELLED):
        raise InvalidJobStateError(job.status, JobStatus.CANCELLED)

    now = utcnow()
    previous = job.status
    if previous == JobStatus.PROCESSING:
        await close_execution(session, job, JobStatus.CANCELLED, now, error="Cancelled")
        await release_lease(session, job.id)
    else:
        QUEUE_DEPTH.labels(queue_name=job.queue_name).dec()

    job.status = JobStatus.CANCELLED
    job.completed_at = now
    job.updated_at = now

    record_event(session, job.id, JobEvent.CANCELLED, now, previous_status=str(previous))
    await session.flush()
    logger.info(f"Job {job.id} cancelled (was {previous})")
    return job

async def retry_job(session: AsyncSession, job_id: UUID, agency_id: Optional[str] = None) -> Job:
    """
    Manually re-queues a failed job: runnable immediately with a fresh
    attempt budget. Dead-lettered jobs return to their original queue.
    """
    job = await get_job(session, job_id, agency_id)

    if job.status != JobStatus.FAILED:
        raise InvalidJobStateError(job.status, JobStatus.PENDING)

    now = utcnow()
    context = dict(job.context or {})
    dead_letter = context.pop("dead_letter", None)
    if dead_letter and dead_letter.get("original_queue"):
        job.queue_name = dead_letter["original_queue"]
        job.context = context

    job.status = JobStatus.PENDING
    job.scheduled_at = now
    job.attempt_count = 0
    job.error_message = None
    job.error_details = None
    job.failed_at = None
    job.completed_at = None
    job.worker_id = None
    job.worker_hostname = None
    job.updated_at = now

    QUEUE_DEPTH.labels(queue_name=job.queue_name).inc()
    record_event(session, job.id, JobEvent.REQUEUED, now, reason="manual_retry", queue=job.queue_name)
    await session.flush()
    return job
