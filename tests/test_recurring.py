from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.commands.complete_job import complete_job
from app.commands.lease_job import lease_job
from app.commands.recurring import (
    create_recurring_job,
    delete_recurring_job,
    get_recurring_job,
    list_recurring_jobs,
    next_run_after,
    spawn_due_recurring_jobs,
    update_recurring_job,
)
from app.db.models import Job, RecurringJob
from app.domain.errors import ConflictError, RecurringJobNotFoundError, ValidationError
from app.utils.clock import as_utc, utcnow


def test_next_run_in_utc():
    after = datetime(2026, 3, 2, 10, 2, tzinfo=timezone.utc)
    assert next_run_after("*/5 * * * *", "UTC", after) == datetime(2026, 3, 2, 10, 5, tzinfo=timezone.utc)


def test_next_run_respects_timezone():
    after = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)
    # 09:00 in New York during winter is 14:00 UTC
    assert next_run_after("0 9 * * *", "America/New_York", after) == datetime(2026, 1, 1, 14, 0, tzinfo=timezone.utc)


def test_next_run_is_strictly_after():
    after = datetime(2026, 3, 2, 10, 5, tzinfo=timezone.utc)
    assert next_run_after("*/5 * * * *", "UTC", after) == datetime(2026, 3, 2, 10, 10, tzinfo=timezone.utc)


def test_invalid_cron_and_timezone():
    now = utcnow()
    with pytest.raises(ValidationError):
        next_run_after("not a cron", "UTC", now)
    with pytest.raises(ValidationError):
        next_run_after("* * * * *", "Mars/Olympus_Mons", now)


async def test_create_computes_next_run(session):
    before = utcnow()
    recurring = await create_recurring_job(session, "nightly-digest", "send_digest", "0 2 * * *")

    assert recurring.queue_name == "default"
    assert recurring.is_active
    assert as_utc(recurring.next_run_at) > before
    assert recurring.total_runs == 0

    with pytest.raises(ConflictError):
        await create_recurring_job(session, "nightly-digest", "send_digest", "0 3 * * *")


async def test_spawn_due_jobs(session):
    recurring = await create_recurring_job(
        session, "sync-invoices", "sync_invoices", "*/5 * * * *",
        payload={"full": False},
        context={"source": "schedule"},
        priority="high",
    )
    due_at = as_utc(recurring.next_run_at) + timedelta(seconds=1)

    assert await spawn_due_recurring_jobs(session, now=due_at) == 1

    job = await session.scalar(select(Job).where(Job.recurring_job_id == recurring.id))
    assert job.job_type == "sync_invoices"
    assert job.job_name == "sync-invoices"
    assert job.priority == "high"
    assert job.payload == {"full": False}
    assert job.context == {"source": "schedule", "recurring_job": "sync-invoices"}

    assert recurring.total_runs == 1
    assert recurring.last_job_id == job.id
    assert as_utc(recurring.next_run_at) > due_at

    # Nothing more is due at the same instant
    assert await spawn_due_recurring_jobs(session, now=due_at) == 0


async def test_inactive_schedules_do_not_spawn(session):
    recurring = await create_recurring_job(session, "paused", "noop", "* * * * *", is_active=False)

    far_future = as_utc(recurring.next_run_at) + timedelta(days=1)
    assert await spawn_due_recurring_jobs(session, now=far_future) == 0


async def test_completed_run_counts_as_success(session):
    recurring = await create_recurring_job(session, "cleanup", "noop", "* * * * *")
    await spawn_due_recurring_jobs(session, now=as_utc(recurring.next_run_at) + timedelta(seconds=1))

    job = await session.scalar(select(Job).where(Job.recurring_job_id == recurring.id))

    _, lease = await lease_job(session, "worker-1", ["default"])
    await complete_job(session, job.id, None, lease.lease_token)

    successful = await session.scalar(select(RecurringJob.successful_runs).where(RecurringJob.id == recurring.id))
    assert successful == 1


async def test_update_reschedules(session):
    recurring = await create_recurring_job(session, "report", "build_report", "0 0 1 * *")
    monthly = as_utc(recurring.next_run_at)

    updated = await update_recurring_job(session, recurring.id, {"cron_expression": "* * * * *"})

    assert updated.cron_expression == "* * * * *"
    assert as_utc(updated.next_run_at) <= monthly
    assert as_utc(updated.next_run_at) <= utcnow() + timedelta(minutes=1)

    with pytest.raises(ValidationError):
        await update_recurring_job(session, recurring.id, {"cron_expression": "every day"})


async def test_agency_scoping_and_delete(session, agency):
    mine = await create_recurring_job(session, "mine", "noop", "* * * * *", agency_id=agency.id)
    await create_recurring_job(session, "global", "noop", "* * * * *")

    assert [r.name for r in await list_recurring_jobs(session, agency_id=agency.id)] == ["mine"]
    assert len(await list_recurring_jobs(session)) == 2

    with pytest.raises(RecurringJobNotFoundError):
        await get_recurring_job(session, mine.id, "other-agency")

    await delete_recurring_job(session, mine.id, agency.id)
    with pytest.raises(RecurringJobNotFoundError):
        await get_recurring_job(session, mine.id)
