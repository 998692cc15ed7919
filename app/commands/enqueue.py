from datetime import datetime, timedelta
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOB_ENQUEUED_TOTAL, QUEUE_DEPTH
from app.commands.lifecycle import record_event
from app.commands.queues import get_queue_config
from app.db.models import Job, JobDependency
from app.domain.errors import ValidationError
from app.domain.states import JobEvent, JobPriority, JobStatus, PRIORITY_RANK
from app.settings import settings
from app.utils.clock import as_utc, utcnow

async def enqueue_job(
    session: AsyncSession,
    job_type: str,
    payload: Any = None,
    *,
    queue: Optional[str] = None,
    priority: str = JobPriority.NORMAL,
    delay: int = 0,
    max_attempts: Optional[int] = None,
    timeout: Optional[int] = None,
    depends_on: Optional[Sequence[UUID]] = None,
    parent_job_id: Optional[UUID] = None,
    context: Optional[dict[str, Any]] = None,
    scheduled_at: Optional[datetime] = None,
    created_by: Optional[str] = None,
    agency_id: Optional[str] = None,
    job_name: Optional[str] = None,
    recurring_job_id: Optional[UUID] = None,
) -> Job:
    """
    Adds a job to a queue.
    Defaults for attempts and timeout come from the queue configuration
    (or the implicit defaults when the queue is not configured).
    """
    if not job_type:
        raise ValidationError("job_type is required")

    queue_name = queue or settings.DEFAULT_QUEUE_NAME
    config = await get_queue_config(session, queue_name)

    if priority not in config.allowed_priorities:
        raise ValidationError(f"Priority '{priority}' is not allowed on queue {queue_name}")
    if delay < 0:
        raise ValidationError("delay cannot be negative")
    if max_attempts is not None and max_attempts < 1:
        raise ValidationError("max_attempts must be at least 1")
    if timeout is not None and timeout < 1:
        raise ValidationError("timeout must be at least 1 second")

    dependency_ids = list(dict.fromkeys(depends_on or []))
    if dependency_ids:
        found = await session.scalar(select(func.count()).select_from(Job).where(Job.id.in_(dependency_ids)))
        if found != len(dependency_ids):
            raise ValidationError("depends_on references unknown jobs")

    now = utcnow()
    run_at = as_utc(scheduled_at) if scheduled_at else now
    if delay:
        run_at = run_at + timedelta(seconds=delay)

    job = Job(
        queue_name=queue_name,
        job_type=job_type,
        job_name=job_name,
        payload=payload if payload is not None else {},
        context=context or {},
        priority=JobPriority(priority),
        priority_rank=PRIORITY_RANK[JobPriority(priority)],
        max_attempts=max_attempts or config.default_max_attempts,
        attempt_count=0,
        timeout_seconds=timeout or config.default_timeout_seconds,
        scheduled_at=run_at,
        delay_seconds=delay,
        status=JobStatus.PENDING,
        parent_job_id=parent_job_id,
        recurring_job_id=recurring_job_id,
        created_by=created_by,
        agency_id=agency_id,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    for dependency_id in dependency_ids:
        session.add(JobDependency(job_id=job.id, depends_on_id=dependency_id))

    JOB_ENQUEUED_TOTAL.labels(queue_name=queue_name, priority=str(job.priority)).inc()
    QUEUE_DEPTH.labels(queue_name=queue_name).inc()

    record_event(session, job.id, JobEvent.CREATED, now, queue=queue_name, scheduled_at=run_at.isoformat())
    await session.flush()
    return job

async def enqueue_batch(session: AsyncSession, specs: Sequence[dict[str, Any]]) -> list[Job]:
    """
    Enqueues several jobs in the caller's transaction.
    Any invalid spec raises and nothing is committed.
    """
    jobs = []
    for spec in specs:
        spec = dict(spec)
        job_type = spec.pop("job_type", None)
        payload = spec.pop("payload", None)
        jobs.append(await enqueue_job(session, job_type, payload, **spec))
    return jobs
