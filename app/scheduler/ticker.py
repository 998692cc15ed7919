import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import QUEUE_DEPTH, JOBS_INFLIGHT
from app.commands.cleanup import cleanup_old_jobs
from app.commands.recurring import spawn_due_recurring_jobs
from app.commands.requeue_expired import requeue_expired_jobs, fail_timed_out_jobs
from app.commands.workers import mark_stale_workers
from app.db.models import Job, JobLease, JobQueue
from app.domain.states import RUNNABLE_STATUSES
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

async def run_leader_tasks(session: AsyncSession, cleanup: bool = False) -> dict[str, int]:
    """
    Periodic maintenance, run by the leader only:
    1. Requeue jobs whose lease expired (Reaper)
    2. Fail jobs running past their timeout
    3. Spawn due recurring jobs
    4. Flag workers that stopped heartbeating
    5. Retention cleanup, when asked to
    Each step commits on its own; a step that raises is rolled back, logged
    and counted as 0 while the remaining steps still run.
    """
    now = utcnow()
    steps = [
        ("requeued", requeue_expired_jobs),
        ("timed_out", fail_timed_out_jobs),
        ("recurring_spawned", lambda s: spawn_due_recurring_jobs(s, now)),
        ("stale_workers", mark_stale_workers),
    ]
    if cleanup:
        steps.append(("cleaned_up", cleanup_old_jobs))

    summary = {}
    for name, step in steps:
        try:
            summary[name] = await step(session)
            await session.commit()
        except Exception as e:
            logger.error(f"Maintenance step {name} failed: {e}", exc_info=True)
            await session.rollback()
            summary[name] = 0

    if any(summary.values()):
        logger.info(f"Maintenance tick: {summary}")
    return summary

async def run_metrics_tasks(session: AsyncSession) -> None:
    """
    Refreshes gauges from the database (queue depth & inflight), on every
    instance so /metrics is accurate wherever it is scraped.
    """
    now = utcnow()

    q_inflight = select(func.count()).select_from(JobLease).where(JobLease.expires_at > now)
    inflight_count = (await session.execute(q_inflight)).scalar() or 0
    JOBS_INFLIGHT.set(inflight_count)

    q_depth = (
        select(Job.queue_name, func.count(Job.id))
        .where(Job.status.in_(RUNNABLE_STATUSES))
        .group_by(Job.queue_name)
    )
    depths = dict((await session.execute(q_depth)).all())

    # Configured queues with nothing waiting report 0 rather than a stale value
    for name in (await session.scalars(select(JobQueue.name))).all():
        depths.setdefault(name, 0)

    for queue_name, count in depths.items():
        QUEUE_DEPTH.labels(queue_name=queue_name).set(count)

    await session.commit()
