from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.commands.lifecycle import record_event
from app.db.models import JobLease, Job
from app.domain.states import JobEvent
from app.domain.errors import LeaseNotFoundError, LeaseExpiredError
from app.utils.clock import as_utc, utcnow

async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    extend_seconds: int = 60,
    progress_current: Optional[int] = None,
    progress_total: Optional[int] = None,
    progress_message: Optional[str] = None,
) -> datetime:
    """
    Renews the lease for a job and records reported progress.
    Throws error if lease not found, token mismatch, already expired,
    or the job has run past its timeout.
    Returns new expires_at.
    """
    now = utcnow()

    stmt = select(JobLease).where(
        JobLease.job_id == job_id,
        JobLease.lease_token == lease_token
    )
    lease = await session.scalar(stmt)

    if not lease:
        # Requeued, completed, cancelled or taken over by another worker
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    expires_at = as_utc(lease.expires_at)
    if expires_at < now:
        # It's likely been swept or will be swept.
        raise LeaseExpiredError(f"Lease for job {job_id} expired at {expires_at}")

    job = await session.get(Job, job_id)

    if job and job.timeout_seconds and job.started_at:
        runtime = (now - as_utc(job.started_at)).total_seconds()
        if runtime > job.timeout_seconds:
            raise LeaseExpiredError(f"Execution timeout exceeded ({runtime:.0f} > {job.timeout_seconds}s)")

    new_expires_at = now + timedelta(seconds=extend_seconds)
    lease.last_heartbeat_at = now
    lease.expires_at = new_expires_at

    if job and (progress_current is not None or progress_total is not None or progress_message is not None):
        if progress_total is not None:
            job.progress_total = progress_total
        if progress_current is not None:
            job.progress_current = min(progress_current, job.progress_total)
        if progress_message is not None:
            job.progress_message = progress_message
        job.updated_at = now
        record_event(
            session, job.id, JobEvent.PROGRESS, now,
            current=job.progress_current, total=job.progress_total, message=job.progress_message,
        )

    await session.flush()
    return new_expires_at
