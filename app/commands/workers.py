import logging
from datetime import timedelta
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import WORKERS_HEALTHY
from app.db.models import JobWorker
from app.domain.errors import ValidationError, WorkerNotFoundError
from app.domain.states import WorkerStatus
from app.settings import settings
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

def _health_cutoff(now):
    return now - timedelta(seconds=settings.WORKER_HEALTH_TIMEOUT_SECONDS)

async def get_worker(session: AsyncSession, worker_id: str) -> JobWorker:
    worker = await session.scalar(select(JobWorker).where(JobWorker.worker_id == worker_id))
    if worker is None:
        raise WorkerNotFoundError(worker_id)
    return worker

async def register_worker(
    session: AsyncSession,
    worker_id: str,
    hostname: str,
    queues: Sequence[str],
    process_id: Optional[int] = None,
    max_concurrent_jobs: int = 5,
    version: Optional[str] = None,
    environment: str = "development",
) -> JobWorker:
    """Creates the worker row, or resets it when the same worker_id restarts."""
    if not worker_id:
        raise ValidationError("worker_id is required")
    if not queues:
        raise ValidationError("A worker must subscribe to at least one queue")
    if max_concurrent_jobs < 1:
        raise ValidationError("max_concurrent_jobs must be at least 1")

    now = utcnow()
    worker = await session.scalar(select(JobWorker).where(JobWorker.worker_id == worker_id))
    if worker is None:
        worker = JobWorker(worker_id=worker_id, created_at=now)
        session.add(worker)

    worker.hostname = hostname
    worker.process_id = process_id
    worker.queues = list(queues)
    worker.max_concurrent_jobs = max_concurrent_jobs
    worker.version = version
    worker.environment = environment
    worker.status = WorkerStatus.IDLE
    worker.is_healthy = True
    worker.started_at = now
    worker.last_heartbeat = now
    worker.updated_at = now

    await session.flush()
    logger.info(f"Worker {worker_id} registered on {hostname} for queues {list(queues)}")
    return worker

async def worker_heartbeat(session: AsyncSession, worker_id: str, active_jobs: int = 0) -> JobWorker:
    worker = await get_worker(session, worker_id)
    now = utcnow()

    worker.last_heartbeat = now
    worker.is_healthy = True
    if worker.status != WorkerStatus.STOPPING:
        worker.status = WorkerStatus.WORKING if active_jobs > 0 else WorkerStatus.IDLE
    worker.updated_at = now

    await session.flush()
    return worker

async def stop_worker(session: AsyncSession, worker_id: str, graceful: bool = False) -> JobWorker:
    """Marks a worker stopping (still draining) or stopped."""
    worker = await get_worker(session, worker_id)
    worker.status = WorkerStatus.STOPPING if graceful else WorkerStatus.STOPPED
    worker.updated_at = utcnow()
    await session.flush()
    logger.info(f"Worker {worker_id} is {worker.status}")
    return worker

async def list_workers(
    session: AsyncSession,
    status: Optional[str] = None,
    environment: Optional[str] = None,
) -> list[JobWorker]:
    """Workers ordered by last heartbeat, with is_healthy recomputed from it."""
    stmt = select(JobWorker).order_by(JobWorker.last_heartbeat.desc())
    if status:
        stmt = stmt.where(JobWorker.status == status)
    if environment:
        stmt = stmt.where(JobWorker.environment == environment)

    workers = list((await session.scalars(stmt)).all())
    cutoff = _health_cutoff(utcnow())
    for worker in workers:
        worker.is_healthy = (
            worker.status != WorkerStatus.STOPPED and as_utc(worker.last_heartbeat) >= cutoff
        )
    return workers

async def mark_stale_workers(session: AsyncSession) -> int:
    """Flags workers whose heartbeat is older than the health timeout."""
    now = utcnow()
    cutoff = _health_cutoff(now)

    result = await session.execute(
        update(JobWorker)
        .where(JobWorker.is_healthy.is_(True), JobWorker.last_heartbeat < cutoff)
        .values(is_healthy=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    stale = result.rowcount or 0
    if stale:
        logger.warning(f"Marked {stale} workers unhealthy (no heartbeat for {settings.WORKER_HEALTH_TIMEOUT_SECONDS}s)")

    healthy = (await session.scalars(
        select(JobWorker.id).where(JobWorker.is_healthy.is_(True), JobWorker.status != WorkerStatus.STOPPED)
    )).all()
    WORKERS_HEALTHY.set(len(healthy))
    return stale
