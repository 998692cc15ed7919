from datetime import timedelta
from typing import Optional, Sequence
from uuid import uuid4
import logging

from sqlalchemy import select
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import QUEUE_DEPTH, JOB_START_DELAY, JOB_LEASE_TOTAL
from app.commands.lifecycle import record_event
from app.db.models import Job, JobDependency, JobExecution, JobLease
from app.domain.states import JobStatus, JobEvent, RUNNABLE_STATUSES
from app.scheduler.dispatcher import eligible_queues
from app.settings import settings
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

async def lease_job(
    session: AsyncSession,
    worker_id: str,
    queues: Sequence[str],
    hostname: Optional[str] = None,
    lease_duration: Optional[int] = None
) -> Optional[tuple[Job, JobLease]]:
    """
    Atomically claims the next runnable job for the given worker.

    Candidates are pending/retrying jobs whose scheduled_at has passed, whose
    dependencies have all completed, in queues that pass admission control.
    Ordered by priority (critical first), then scheduled_at, then created_at.
    """
    duration = lease_duration if lease_duration is not None else settings.DEFAULT_LEASE_TIMEOUT_SECONDS
    now = utcnow()

    queue_names = await eligible_queues(session, worker_id, queues, now)
    if not queue_names:
        return None

    job = await session.scalar(_build_job_query(queue_names, now))
    if not job:
        return None

    lease_token = uuid4()
    expires_at = now + timedelta(seconds=duration)

    scheduled_at = as_utc(job.scheduled_at)
    job.status = JobStatus.PROCESSING
    job.attempt_count += 1
    job.started_at = now  # Reset execution timer
    job.worker_id = worker_id
    job.worker_hostname = hostname
    job.updated_at = now

    lease = JobLease(
        job_id=job.id,
        worker_id=worker_id,
        lease_token=lease_token,
        expires_at=expires_at,
        last_heartbeat_at=now
    )
    session.add(lease)

    session.add(JobExecution(
        job_id=job.id,
        queue_name=job.queue_name,
        attempt_number=job.attempt_count,
        worker_id=worker_id,
        worker_hostname=hostname,
        started_at=now,
        status=JobStatus.PROCESSING,
    ))

    # Metrics
    QUEUE_DEPTH.labels(queue_name=job.queue_name).dec()
    JOB_LEASE_TOTAL.labels(queue_name=job.queue_name).inc()
    if scheduled_at:
        delay = (now - scheduled_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

    # Audit log
    record_event(
        session, job.id, JobEvent.LEASED, now,
        worker_id=worker_id,
        lease_token=str(lease_token),
        expires_at=expires_at.isoformat(),
        attempt=job.attempt_count,
    )

    await session.flush()
    logger.debug(f"Worker {worker_id} leased job {job.id} ({job.job_type}) attempt {job.attempt_count}")
    return job, lease

def _build_job_query(queue_names, now):
    parent = aliased(Job)
    blocked = (
        select(JobDependency.job_id)
        .join(parent, parent.id == JobDependency.depends_on_id)
        .where(JobDependency.job_id == Job.id, parent.status != JobStatus.COMPLETED)
        .exists()
    )
    return select(Job).where(
        Job.queue_name.in_(queue_names),
        Job.status.in_(RUNNABLE_STATUSES),
        Job.scheduled_at <= now,
        ~blocked,
    ).order_by(
        Job.priority_rank.desc(),
        Job.scheduled_at.asc(),
        Job.created_at.asc()
    ).with_for_update(skip_locked=True, of=Job).limit(1)
