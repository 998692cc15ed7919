import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOB_REAPED_TOTAL
from app.commands.lifecycle import apply_failure, record_event
from app.db.models import Job, JobLease
from app.domain.states import JobStatus, JobEvent
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired (worker crash?)"
TIMEOUT_ERROR = "Job timeout"

async def requeue_expired_jobs(session: AsyncSession, limit: int = 100) -> int:
    """
    Finds expired leases and treats them as failed attempts: the job is
    retried (runnable immediately) while attempts remain, otherwise it
    fails and may be dead-lettered.
    Returns number of jobs recovered.
    """
    now = utcnow()

    # 1. Select expired leases FOR UPDATE
    stmt = select(JobLease).where(
        JobLease.expires_at < now
    ).limit(limit).with_for_update(skip_locked=True)

    expired_leases = (await session.execute(stmt)).scalars().all()
    if not expired_leases:
        return 0

    count = 0
    for lease in expired_leases:
        job = await session.get(Job, lease.job_id, with_for_update=True)
        if job is None or job.status != JobStatus.PROCESSING:
            # Orphaned lease
            await session.delete(lease)
            continue

        worker_id = lease.worker_id
        status = await apply_failure(
            session, job, LEASE_EXPIRED_ERROR, now,
            error_details={"reason": "lease_expired", "worker_id": worker_id},
            reason="lease_expired",
        )
        if status == JobStatus.RETRYING:
            # Worker crashes are not the job's fault; no backoff
            job.scheduled_at = now
            record_event(session, job.id, JobEvent.REQUEUED, now, reason="lease_expired", worker_id=worker_id)
        count += 1

    if count > 0:
        JOB_REAPED_TOTAL.labels(reason="lease_expired").inc(count)
        logger.info(f"Reaper recovered {count} jobs with expired leases")

    await session.flush()
    return count

async def fail_timed_out_jobs(session: AsyncSession, limit: int = 100) -> int:
    """
    Fails processing jobs that have run past timeout_seconds, regardless
    of whether their worker keeps heartbeating.
    """
    now = utcnow()

    stmt = (
        select(Job)
        .where(Job.status == JobStatus.PROCESSING, Job.started_at.is_not(None))
        .order_by(Job.started_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    jobs = (await session.execute(stmt)).scalars().all()

    count = 0
    for job in jobs:
        runtime = (now - as_utc(job.started_at)).total_seconds()
        if runtime <= job.timeout_seconds:
            continue
        await apply_failure(
            session, job, TIMEOUT_ERROR, now,
            error_details={"reason": "timeout", "runtime_seconds": int(runtime), "timeout_seconds": job.timeout_seconds},
            reason="timeout",
        )
        record_event(session, job.id, JobEvent.TIMED_OUT, now, runtime_seconds=int(runtime))
        count += 1

    if count > 0:
        JOB_REAPED_TOTAL.labels(reason="timeout").inc(count)
        logger.info(f"Failed {count} jobs that exceeded their timeout")

    await session.flush()
    return count
