from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Job, JobExecution, JobQueue, JobWorker
from app.domain.models import QueueStats
from app.domain.states import JobStatus, WorkerStatus
from app.settings import settings
from app.utils.clock import as_utc, utcnow

_STATUS_FIELDS = {
    JobStatus.PENDING: "jobs_pending",
    JobStatus.PROCESSING: "jobs_processing",
    JobStatus.COMPLETED: "jobs_completed",
    JobStatus.FAILED: "jobs_failed",
    JobStatus.CANCELLED: "jobs_cancelled",
    JobStatus.RETRYING: "jobs_retrying",
}

async def get_queue_stats(session: AsyncSession, queue_name: Optional[str] = None) -> list[QueueStats]:
    """
    Per-queue counters for the dashboard.
    Covers configured queues plus any queue name that holds jobs.
    """
    now = utcnow()

    names_stmt = select(JobQueue.name).union(select(Job.queue_name))
    names = sorted(set((await session.scalars(names_stmt)).all()))
    if queue_name:
        names = [n for n in names if n == queue_name] or [queue_name]

    stats = {name: QueueStats(queue_name=name) for name in names}

    counts = (await session.execute(
        select(Job.queue_name, Job.status, func.count())
        .where(Job.queue_name.in_(names))
        .group_by(Job.queue_name, Job.status)
    )).all()
    for name, status, count in counts:
        field = _STATUS_FIELDS.get(JobStatus(status))
        if field:
            setattr(stats[name], field, count)

    durations = (await session.execute(
        select(JobExecution.queue_name, func.avg(JobExecution.duration_ms))
        .where(
            JobExecution.queue_name.in_(names),
            JobExecution.status == JobStatus.COMPLETED,
            JobExecution.duration_ms.is_not(None),
        )
        .group_by(JobExecution.queue_name)
    )).all()
    for name, avg in durations:
        stats[name].avg_processing_time_ms = round(float(avg or 0), 2)

    recent = (await session.execute(
        select(Job.queue_name, func.count())
        .where(
            Job.queue_name.in_(names),
            Job.status == JobStatus.COMPLETED,
            Job.completed_at >= now - timedelta(minutes=1),
        )
        .group_by(Job.queue_name)
    )).all()
    for name, count in recent:
        stats[name].jobs_per_minute = count

    # Worker subscriptions live in a JSON column; resolved in Python
    healthy_since = now - timedelta(seconds=settings.WORKER_HEALTH_TIMEOUT_SECONDS)
    workers = (await session.scalars(
        select(JobWorker).where(JobWorker.status != WorkerStatus.STOPPED)
    )).all()
    for worker in workers:
        if as_utc(worker.last_heartbeat) < healthy_since:
            continue
        for name in worker.queues or []:
            if name in stats:
                stats[name].active_workers += 1

    return [stats[name] for name in names]
