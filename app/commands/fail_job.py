from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.commands.lifecycle import apply_failure
from app.db.models import Job, JobLease
from app.domain.states import JobStatus
from app.domain.errors import JobNotFoundError, InvalidJobStateError, LeaseNotFoundError
from app.utils.clock import utcnow

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    lease_token: Optional[UUID] = None,
    error_details: Optional[dict[str, Any]] = None,
    retryable: bool = True,
) -> Job:
    """
    Records a failed attempt.
    The job becomes RETRYING (with backoff) while attempts remain and the
    error is retryable, otherwise FAILED and possibly dead-lettered.
    """
    now = utcnow()

    job = await session.get(Job, job_id, with_for_update=True)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.FAILED)

    if lease_token:
        lease = await session.scalar(select(JobLease).where(
            JobLease.job_id == job_id,
            JobLease.lease_token == lease_token
        ))
        if not lease:
            raise LeaseNotFoundError(f"Lease for job {job_id} invalid or lost")

    await apply_failure(
        session, job, error, now,
        error_details=error_details,
        retryable=retryable,
    )

    await session.flush()
    return job
