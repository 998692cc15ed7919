from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import JobQueue
from app.domain.errors import ConflictError, QueueNotFoundError, ValidationError
from app.domain.models import QueueConfig
from app.domain.states import JobPriority
from app.settings import settings
from app.utils.clock import utcnow

_CONFIG_FIELDS = (
    "is_active",
    "max_workers",
    "max_jobs_per_worker",
    "rate_limit_per_minute",
    "rate_limit_per_hour",
    "default_max_attempts",
    "default_timeout_seconds",
    "retry_delay_base_seconds",
    "retry_delay_max_seconds",
    "dead_letter_queue_name",
    "dead_letter_after_attempts",
    "allowed_priorities",
    "retention_completed_hours",
    "retention_failed_hours",
)

_UPDATABLE_FIELDS = _CONFIG_FIELDS + ("display_name", "description")
_NULLABLE_FIELDS = ("dead_letter_queue_name", "display_name", "description")

def implicit_queue_config(name: str) -> QueueConfig:
    return QueueConfig(
        name=name,
        default_max_attempts=settings.DEFAULT_MAX_ATTEMPTS,
        default_timeout_seconds=settings.DEFAULT_TIMEOUT_SECONDS,
        retry_delay_base_seconds=settings.DEFAULT_RETRY_DELAY_BASE_SECONDS,
        retry_delay_max_seconds=settings.DEFAULT_RETRY_DELAY_MAX_SECONDS,
        retention_completed_hours=settings.DEFAULT_RETENTION_COMPLETED_HOURS,
        retention_failed_hours=settings.DEFAULT_RETENTION_FAILED_HOURS,
    )

def to_config(queue: JobQueue) -> QueueConfig:
    values = {f: getattr(queue, f) for f in _CONFIG_FIELDS}
    return QueueConfig(name=queue.name, configured=True, **values)

async def get_queue_config(session: AsyncSession, name: str) -> QueueConfig:
    """Configured settings for the queue, or the implicit defaults."""
    queue = await session.scalar(select(JobQueue).where(JobQueue.name == name))
    if queue is None:
        return implicit_queue_config(name)
    return to_config(queue)

async def get_queue_configs(session: AsyncSession, names: list[str]) -> dict[str, QueueConfig]:
    rows = (await session.scalars(select(JobQueue).where(JobQueue.name.in_(names)))).all()
    configs = {q.name: to_config(q) for q in rows}
    for name in names:
        configs.setdefault(name, implicit_queue_config(name))
    return configs

async def list_queues(session: AsyncSession) -> list[JobQueue]:
    return list((await session.scalars(select(JobQueue).order_by(JobQueue.name))).all())

def _validate(name: str, values: dict[str, Any]) -> None:
    priorities = values.get("allowed_priorities")
    if priorities is not None:
        if not priorities:
            raise ValidationError("allowed_priorities cannot be empty")
        valid = {p.value for p in JobPriority}
        invalid = [p for p in priorities if p not in valid]
        if invalid:
            raise ValidationError(f"Invalid priorities: {', '.join(map(str, invalid))}")

    if values.get("dead_letter_queue_name") == name:
        raise ValidationError("A queue cannot be its own dead letter queue")

    for field in ("max_workers", "max_jobs_per_worker", "default_max_attempts", "default_timeout_seconds"):
        if field in values and values[field] is not None and values[field] < 1:
            raise ValidationError(f"{field} must be at least 1")

    for field in ("rate_limit_per_minute", "rate_limit_per_hour", "retry_delay_base_seconds"):
        if field in values and values[field] is not None and values[field] < 0:
            raise ValidationError(f"{field} cannot be negative")

async def create_queue(session: AsyncSession, name: str, **values: Any) -> JobQueue:
    if not name:
        raise ValidationError("Queue name is required")

    values = {k: v for k, v in values.items() if v is not None and k in _UPDATABLE_FIELDS}
    _validate(name, values)

    existing = await session.scalar(select(JobQueue).where(JobQueue.name == name))
    if existing:
        raise ConflictError(f"Queue {name} already exists")

    queue = JobQueue(name=name, **values)
    session.add(queue)
    await session.flush()
    return queue

async def update_queue(session: AsyncSession, name: str, updates: dict[str, Any]) -> JobQueue:
    queue: Optional[JobQueue] = await session.scalar(select(JobQueue).where(JobQueue.name == name))
    if queue is None:
        raise QueueNotFoundError(name)

    updates = {
        k: v for k, v in updates.items()
        if k in _UPDATABLE_FIELDS and (v is not None or k in _NULLABLE_FIELDS)
    }
    _validate(name, updates)

    for field, value in updates.items():
        setattr(queue, field, value)
    queue.updated_at = utcnow()

    await session.flush()
    return queue
