import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.commands.enqueue import enqueue_job
from app.db.models import RecurringJob
from app.domain.errors import ConflictError, RecurringJobNotFoundError, ValidationError
from app.domain.states import JobPriority
from app.settings import settings
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "description",
    "queue_name",
    "job_type",
    "payload",
    "context",
    "priority",
    "cron_expression",
    "timezone",
    "is_active",
    "max_attempts",
    "timeout_seconds",
)

def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}")

def next_run_after(cron_expression: str, tz_name: str, after: datetime) -> datetime:
    """Next fire time strictly after `after`, evaluated in the job's timezone, returned in UTC."""
    if not croniter.is_valid(cron_expression):
        raise ValidationError(f"Invalid cron expression: {cron_expression}")
    local = as_utc(after).astimezone(_zone(tz_name))
    return croniter(cron_expression, local).get_next(datetime).astimezone(timezone.utc)

def _validate(values: dict[str, Any]) -> None:
    priority = values.get("priority")
    if priority is not None and priority not in {p.value for p in JobPriority}:
        raise ValidationError(f"Invalid priority: {priority}")
    for field in ("max_attempts", "timeout_seconds"):
        if values.get(field) is not None and values[field] < 1:
            raise ValidationError(f"{field} must be at least 1")

async def get_recurring_job(session: AsyncSession, recurring_id: UUID, agency_id: Optional[str] = None) -> RecurringJob:
    recurring = await session.get(RecurringJob, recurring_id)
    if recurring is None or (agency_id is not None and recurring.agency_id != agency_id):
        raise RecurringJobNotFoundError(recurring_id)
    return recurring

async def create_recurring_job(
    session: AsyncSession,
    name: str,
    job_type: str,
    cron_expression: str,
    *,
    queue_name: Optional[str] = None,
    payload: Any = None,
    context: Optional[dict[str, Any]] = None,
    priority: str = JobPriority.NORMAL,
    tz_name: str = "UTC",
    description: Optional[str] = None,
    is_active: bool = True,
    max_attempts: int = 3,
    timeout_seconds: int = 300,
    created_by: Optional[str] = None,
    agency_id: Optional[str] = None,
) -> RecurringJob:
    if not name or not job_type:
        raise ValidationError("name and job_type are required")
    _validate({"priority": priority, "max_attempts": max_attempts, "timeout_seconds": timeout_seconds})

    now = utcnow()
    next_run_at = next_run_after(cron_expression, tz_name, now)

    existing = await session.scalar(select(RecurringJob).where(RecurringJob.name == name))
    if existing:
        raise ConflictError(f"Recurring job {name} already exists")

    recurring = RecurringJob(
        name=name,
        description=description,
        queue_name=queue_name or settings.DEFAULT_QUEUE_NAME,
        job_type=job_type,
        payload=payload if payload is not None else {},
        context=context or {},
        priority=JobPriority(priority),
        cron_expression=cron_expression,
        timezone=tz_name,
        is_active=is_active,
        max_attempts=max_attempts,
        timeout_seconds=timeout_seconds,
        next_run_at=next_run_at,
        created_by=created_by,
        agency_id=agency_id,
        created_at=now,
        updated_at=now,
    )
    session.add(recurring)
    await session.flush()
    logger.info(f"Recurring job {name} created ({cron_expression} {tz_name}), next run {next_run_at.isoformat()}")
    return recurring

async def list_recurring_jobs(
    session: AsyncSession,
    agency_id: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> list[RecurringJob]:
    stmt = select(RecurringJob).order_by(RecurringJob.name)
    if agency_id:
        stmt = stmt.where(RecurringJob.agency_id == agency_id)
    if is_active is not None:
        stmt = stmt.where(RecurringJob.is_active.is_(is_active))
    return list((await session.scalars(stmt)).all())

async def update_recurring_job(
    session: AsyncSession,
    recurring_id: UUID,
    updates: dict[str, Any],
    agency_id: Optional[str] = None,
) -> RecurringJob:
    recurring = await get_recurring_job(session, recurring_id, agency_id)

    updates = {k: v for k, v in updates.items() if k in _UPDATABLE_FIELDS}
    _validate(updates)

    now = utcnow()
    schedule_changed = any(k in updates for k in ("cron_expression", "timezone", "is_active"))
    if schedule_changed:
        cron = updates.get("cron_expression", recurring.cron_expression)
        tz_name = updates.get("timezone", recurring.timezone)
        recurring.next_run_at = next_run_after(cron, tz_name, now)

    for field, value in updates.items():
        setattr(recurring, field, value)
    recurring.updated_at = now

    await session.flush()
    return recurring

async def delete_recurring_job(session: AsyncSession, recurring_id: UUID, agency_id: Optional[str] = None) -> None:
    """Removes the schedule; jobs it already spawned are kept."""
    recurring = await get_recurring_job(session, recurring_id, agency_id)
    await session.delete(recurring)
    await session.flush()

async def spawn_due_recurring_jobs(session: AsyncSession, now: Optional[datetime] = None, limit: int = 100) -> int:
    """
    Enqueues one job per active recurring job that is due.
    next_run_at is advanced past `now`; missed runs are not back-filled.
    """
    now = now or utcnow()

    stmt = (
        select(RecurringJob)
        .where(RecurringJob.is_active.is_(True), RecurringJob.next_run_at <= now)
        .order_by(RecurringJob.next_run_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    due = (await session.scalars(stmt)).all()

    spawned = 0
    for recurring in due:
        try:
            job = await enqueue_job(
                session,
                recurring.job_type,
                recurring.payload,
                queue=recurring.queue_name,
                priority=recurring.priority,
                max_attempts=recurring.max_attempts,
                timeout=recurring.timeout_seconds,
                context={**(recurring.context or {}), "recurring_job": recurring.name},
                created_by=recurring.created_by,
                agency_id=recurring.agency_id,
                job_name=recurring.name,
                recurring_job_id=recurring.id,
            )
        except ValidationError as e:
            # Queue config changed under the schedule; skip this slot
            logger.error(f"Recurring job {recurring.name} could not be enqueued: {e}")
            recurring.next_run_at = next_run_after(recurring.cron_expression, recurring.timezone, now)
            continue

        recurring.last_run_at = now
        recurring.last_job_id = job.id
        recurring.total_runs += 1
        recurring.next_run_at = next_run_after(recurring.cron_expression, recurring.timezone, now)
        recurring.updated_at = now
        spawned += 1

    if spawned:
        logger.info(f"Spawned {spawned} recurring jobs")
    await session.flush()
    return spawned
