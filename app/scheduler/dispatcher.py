from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from app.commands.queues import get_queue_configs
from app.db.models import Job, JobLease, JobExecution
from app.domain.models import QueueConfig
from app.settings import settings

async def eligible_queues(
    session: AsyncSession,
    worker_id: str,
    queues: Sequence[str],
    now: datetime,
) -> list[str]:
    """
    Admission control for a poll. Returns the subset of the worker's queues
    it may lease from right now:

    1. Global concurrency cap over all non-expired leases.
    2. Queue must be active (implicit queues always are).
    3. max_jobs_per_worker: leases this worker already holds in the queue.
    4. max_workers: distinct workers holding leases in the queue (a worker
       already holding one does not count as a new worker).
    5. rate_limit_per_minute / rate_limit_per_hour: attempts started in the
       trailing window (0 disables the limit).
    """
    if not queues:
        return []

    # 1. Global Concurrency Check
    q_global = select(func.count()).select_from(JobLease).where(JobLease.expires_at > now)
    global_count = (await session.execute(q_global)).scalar() or 0
    if global_count >= settings.GLOBAL_CONCURRENCY_CAP:
        return []

    configs = await get_queue_configs(session, list(queues))

    # Leases per (queue, worker)
    lease_rows = (await session.execute(
        select(Job.queue_name, JobLease.worker_id, func.count())
        .join(JobLease, JobLease.job_id == Job.id)
        .where(Job.queue_name.in_(list(queues)))
        .group_by(Job.queue_name, JobLease.worker_id)
    )).all()

    own_leases: dict[str, int] = {}
    workers_per_queue: dict[str, set[str]] = {}
    for queue_name, lease_worker, count in lease_rows:
        workers_per_queue.setdefault(queue_name, set()).add(lease_worker)
        if lease_worker == worker_id:
            own_leases[queue_name] = count

    # Attempts started in the trailing minute / hour
    minute_ago = now - timedelta(minutes=1)
    hour_ago = now - timedelta(hours=1)
    rate_rows = (await session.execute(
        select(
            JobExecution.queue_name,
            func.sum(case((JobExecution.started_at >= minute_ago, 1), else_=0)),
            func.count(),
        )
        .where(JobExecution.queue_name.in_(list(queues)), JobExecution.started_at >= hour_ago)
        .group_by(JobExecution.queue_name)
    )).all()
    rates = {name: (int(per_minute or 0), int(per_hour or 0)) for name, per_minute, per_hour in rate_rows}

    eligible = []
    for name in queues:
        config: QueueConfig = configs[name]
        if not config.is_active:
            continue

        if own_leases.get(name, 0) >= config.max_jobs_per_worker:
            continue

        active_workers = workers_per_queue.get(name, set())
        if worker_id not in active_workers and len(active_workers) >= config.max_workers:
            continue

        per_minute, per_hour = rates.get(name, (0, 0))
        if config.rate_limit_per_minute and per_minute >= config.rate_limit_per_minute:
            continue
        if config.rate_limit_per_hour and per_hour >= config.rate_limit_per_hour:
            continue

        eligible.append(name)

    return eligible
