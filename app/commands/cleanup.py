import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from app.commands.queues import get_queue_configs
from app.db.models import Job, JobDependency, JobEventLog, JobExecution, JobLease
from app.domain.states import JobStatus, TERMINAL_STATUSES
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

_FAILED_LIKE = (JobStatus.FAILED, JobStatus.CANCELLED)

async def cleanup_old_jobs(session: AsyncSession) -> int:
    """
    Deletes finished jobs past their queue's retention window.
    Completed jobs use retention_completed_hours; failed and cancelled jobs
    use retention_failed_hours and stay while an unfinished job depends on
    them. Returns the number of jobs deleted.
    """
    now = utcnow()

    queue_names = (await session.scalars(
        select(Job.queue_name)
        .where(Job.status.in_((JobStatus.COMPLETED, *_FAILED_LIKE)))
        .distinct()
    )).all()
    if not queue_names:
        return 0

    configs = await get_queue_configs(session, list(queue_names))

    # A failed or cancelled dependency keeps its dependents blocked; deleting it
    # would drop the dependency row and let them run
    dependent = aliased(Job)
    still_blocking = (
        select(JobDependency.depends_on_id)
        .join(dependent, dependent.id == JobDependency.job_id)
        .where(JobDependency.depends_on_id == Job.id, dependent.status.not_in(TERMINAL_STATUSES))
        .exists()
    )

    job_ids: list[UUID] = []
    for name in queue_names:
        config = configs[name]
        completed_cutoff = now - timedelta(hours=config.retention_completed_hours)
        failed_cutoff = now - timedelta(hours=config.retention_failed_hours)

        job_ids.extend((await session.scalars(
            select(Job.id).where(
                Job.queue_name == name,
                Job.status == JobStatus.COMPLETED,
                Job.completed_at < completed_cutoff,
            )
        )).all())
        job_ids.extend((await session.scalars(
            select(Job.id).where(
                Job.queue_name == name,
                Job.status.in_(_FAILED_LIKE),
                Job.updated_at < failed_cutoff,
                ~still_blocking,
            )
        )).all())

    if not job_ids:
        return 0

    # Children first; foreign keys are not enforced on every backend
    await session.execute(
        delete(JobDependency).where(
            JobDependency.job_id.in_(job_ids) | JobDependency.depends_on_id.in_(job_ids)
        )
    )
    await session.execute(update(Job).where(Job.parent_job_id.in_(job_ids)).values(parent_job_id=None))
    await session.execute(delete(JobLease).where(JobLease.job_id.in_(job_ids)))
    await session.execute(delete(JobExecution).where(JobExecution.job_id.in_(job_ids)))
    await session.execute(delete(JobEventLog).where(JobEventLog.job_id.in_(job_ids)))
    await session.execute(delete(Job).where(Job.id.in_(job_ids)))
    await session.flush()

    logger.info(f"Cleanup removed {len(job_ids)} jobs past retention")
    return len(job_ids)
