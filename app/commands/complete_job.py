import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL
from app.commands.lifecycle import (
    add_outbox,
    close_execution,
    record_event,
    release_lease,
    update_recurring_stats,
    update_worker_counters,
)
from app.db.models import Job, JobLease
from app.domain.states import JobStatus, JobEvent
from app.domain.errors import JobNotFoundError, InvalidJobStateError, LeaseNotFoundError
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    result_data: Any = None,
    lease_token: Optional[UUID] = None,
) -> Job:
    """
    Marks a job as COMPLETED and saves result.
    Verifies lease if a token is provided.
    Releases lease (deletes it).
    """
    now = utcnow()

    job = await session.get(Job, job_id, with_for_update=True)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status == JobStatus.COMPLETED:
        # Duplicate ack (e.g. worker retried the request)
        return job
    if job.status != JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    if lease_token:
        lease = await session.scalar(select(JobLease).where(
            JobLease.job_id == job_id,
            JobLease.lease_token == lease_token
        ))
        if not lease:
            # Expired and requeued, or taken over by another worker
            raise LeaseNotFoundError(f"Lease for job {job_id} invalid or lost")

    duration_ms = await close_execution(session, job, JobStatus.COMPLETED, now, result=result_data)
    await release_lease(session, job_id)

    job.status = JobStatus.COMPLETED
    job.result = result_data
    job.completed_at = now
    job.error_message = None
    job.error_details = None
    job.progress_current = job.progress_total
    job.updated_at = now

    await update_worker_counters(session, job.worker_id, True, duration_ms, now)
    await update_recurring_stats(session, job, succeeded=True)

    if duration_ms is not None:
        JOB_DURATION.observe(duration_ms / 1000)
    JOB_COMPLETE_TOTAL.labels(queue_name=job.queue_name).inc()

    record_event(
        session, job.id, JobEvent.COMPLETED, now,
        worker_id=job.worker_id,
        duration_ms=duration_ms,
        lease_token=str(lease_token) if lease_token else None,
    )

    # Outbox Event (Transactional Guarantee)
    add_outbox(session, "job.completed", job, result=result_data, completed_at=now.isoformat())

    await session.flush()
    return job
