from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.commands.complete_job import complete_job
from app.commands.enqueue import enqueue_batch, enqueue_job
from app.commands.heartbeat import heartbeat
from app.commands.lease_job import lease_job
from app.commands.manage import list_executions, list_job_events
from app.commands.queues import create_queue, get_queue_config, update_queue
from app.db.models import JobExecution, JobLease, OutboxEvent
from app.domain.errors import ConflictError, LeaseNotFoundError, QueueNotFoundError, ValidationError
from app.domain.states import JobEvent, JobStatus
from app.settings import settings
from app.utils.clock import utcnow


async def test_enqueue_applies_implicit_queue_defaults(session):
    job = await enqueue_job(session, "send_email", {"to": "ops@acme.test"})

    assert job.status == JobStatus.PENDING
    assert job.queue_name == "default"
    assert job.max_attempts == 3
    assert job.timeout_seconds == 300
    assert job.attempt_count == 0

    events = await list_job_events(session, job.id)
    assert [e.event_type for e in events] == [JobEvent.CREATED]


async def test_enqueue_uses_configured_queue_defaults(session):
    await create_queue(session, "reports", default_max_attempts=5, default_timeout_seconds=900)

    job = await enqueue_job(session, "build_report", queue="reports")

    assert job.max_attempts == 5
    assert job.timeout_seconds == 900


async def test_enqueue_requires_job_type(session):
    with pytest.raises(ValidationError):
        await enqueue_job(session, "", {})


async def test_enqueue_rejects_disallowed_priority(session):
    await create_queue(session, "bulk", allowed_priorities=["low", "normal"])

    with pytest.raises(ValidationError):
        await enqueue_job(session, "import", queue="bulk", priority="critical")


async def test_enqueue_rejects_unknown_dependency(session):
    with pytest.raises(ValidationError):
        await enqueue_job(session, "child", depends_on=[uuid4()])


async def test_enqueue_batch(session):
    jobs = await enqueue_batch(session, [
        {"job_type": "a", "payload": {"n": 1}},
        {"job_type": "b", "payload": {"n": 2}, "priority": "high"},
    ])
    assert [j.job_type for j in jobs] == ["a", "b"]
    assert jobs[1].priority == "high"


async def test_lease_highest_priority_first(session):
    low = await enqueue_job(session, "job", priority="low")
    critical = await enqueue_job(session, "job", priority="critical")
    normal = await enqueue_job(session, "job", priority="normal")

    order = []
    for _ in range(3):
        job, _lease = await lease_job(session, "worker-1", ["default"])
        order.append(job.id)

    assert order == [critical.id, normal.id, low.id]


async def test_lease_marks_job_processing(session):
    job = await enqueue_job(session, "job")

    leased, lease = await lease_job(session, "worker-1", ["default"], hostname="host-a", lease_duration=30)

    assert leased.id == job.id
    assert leased.status == JobStatus.PROCESSING
    assert leased.attempt_count == 1
    assert leased.worker_id == "worker-1"
    assert leased.worker_hostname == "host-a"
    assert lease.worker_id == "worker-1"

    executions = await list_executions(session, job.id)
    assert len(executions) == 1
    assert executions[0].attempt_number == 1
    assert executions[0].queue_name == "default"


async def test_future_scheduled_job_not_leased(session):
    await enqueue_job(session, "later", delay=3600)

    assert await lease_job(session, "worker-1", ["default"]) is None


async def test_job_waits_for_dependencies(session):
    parent = await enqueue_job(session, "parent")
    child = await enqueue_job(session, "child", depends_on=[parent.id], priority="critical")

    job, lease = await lease_job(session, "worker-1", ["default"])
    assert job.id == parent.id
    assert await lease_job(session, "worker-1", ["default"]) is None

    await complete_job(session, parent.id, {"ok": True}, lease.lease_token)

    job, _ = await lease_job(session, "worker-1", ["default"])
    assert job.id == child.id


async def test_inactive_queue_yields_no_job(session):
    await create_queue(session, "paused", is_active=False)
    await enqueue_job(session, "job", queue="paused")

    assert await lease_job(session, "worker-1", ["paused"]) is None


async def test_rate_limit_per_minute(session):
    await create_queue(session, "limited", rate_limit_per_minute=1)
    await enqueue_job(session, "job", queue="limited")
    await enqueue_job(session, "job", queue="limited")

    assert await lease_job(session, "worker-1", ["limited"]) is not None
    assert await lease_job(session, "worker-1", ["limited"]) is None


async def test_rate_limit_per_hour(session):
    await create_queue(session, "hourly", rate_limit_per_hour=2)
    for _ in range(4):
        await enqueue_job(session, "job", queue="hourly")

    _, first = await lease_job(session, "worker-1", ["hourly"])
    # Outside the minute window, still inside the hour
    execution = await session.scalar(select(JobExecution).where(JobExecution.job_id == first.job_id))
    execution.started_at = utcnow() - timedelta(minutes=30)
    await session.flush()

    assert await lease_job(session, "worker-1", ["hourly"]) is not None
    assert await lease_job(session, "worker-1", ["hourly"]) is None

    execution.started_at = utcnow() - timedelta(hours=2)
    await session.flush()

    assert await lease_job(session, "worker-1", ["hourly"]) is not None


async def test_global_concurrency_cap(session, monkeypatch):
    monkeypatch.setattr(settings, "GLOBAL_CONCURRENCY_CAP", 1)
    await enqueue_job(session, "job", queue="emails")
    await enqueue_job(session, "job", queue="reports")

    assert await lease_job(session, "worker-1", ["emails"]) is not None
    assert await lease_job(session, "worker-2", ["reports"]) is None

    monkeypatch.setattr(settings, "GLOBAL_CONCURRENCY_CAP", 2)
    assert await lease_job(session, "worker-2", ["reports"]) is not None


async def test_max_jobs_per_worker(session):
    await create_queue(session, "single", max_jobs_per_worker=1)
    await enqueue_job(session, "job", queue="single")
    await enqueue_job(session, "job", queue="single")

    assert await lease_job(session, "worker-1", ["single"]) is not None
    assert await lease_job(session, "worker-1", ["single"]) is None
    assert await lease_job(session, "worker-2", ["single"]) is not None


async def test_max_workers_per_queue(session):
    await create_queue(session, "narrow", max_workers=1)
    for _ in range(3):
        await enqueue_job(session, "job", queue="narrow")

    assert await lease_job(session, "worker-1", ["narrow"]) is not None
    assert await lease_job(session, "worker-2", ["narrow"]) is None
    # A worker already holding a lease there is not a new worker
    assert await lease_job(session, "worker-1", ["narrow"]) is not None


async def test_heartbeat_extends_lease_and_records_progress(session):
    job = await enqueue_job(session, "job")
    _, lease = await lease_job(session, "worker-1", ["default"], lease_duration=10)
    old_expiry = lease.expires_at

    new_expiry = await heartbeat(
        session, job.id, lease.lease_token,
        extend_seconds=120,
        progress_current=5,
        progress_total=10,
        progress_message="Halfway",
    )

    assert new_expiry > old_expiry
    assert job.progress_current == 5
    assert job.progress_total == 10
    assert job.progress_message == "Halfway"


async def test_heartbeat_with_wrong_token(session):
    job = await enqueue_job(session, "job")
    await lease_job(session, "worker-1", ["default"])

    with pytest.raises(LeaseNotFoundError):
        await heartbeat(session, job.id, uuid4())


async def test_complete_job(session):
    job = await enqueue_job(session, "job")
    _, lease = await lease_job(session, "worker-1", ["default"])

    await complete_job(session, job.id, {"sent": 1}, lease.lease_token)

    assert job.status == JobStatus.COMPLETED
    assert job.result == {"sent": 1}
    assert job.completed_at is not None
    assert await session.scalar(select(JobLease).where(JobLease.job_id == job.id)) is None

    executions = await list_executions(session, job.id)
    assert executions[0].status == JobStatus.COMPLETED
    assert executions[0].duration_ms is not None

    outbox = (await session.scalars(select(OutboxEvent))).all()
    assert [e.event_type for e in outbox] == ["job.completed"]
    assert outbox[0].payload["job_id"] == str(job.id)


async def test_complete_with_stale_token(session):
    job = await enqueue_job(session, "job")
    await lease_job(session, "worker-1", ["default"])

    with pytest.raises(LeaseNotFoundError):
        await complete_job(session, job.id, None, uuid4())


async def test_duplicate_complete_is_noop(session):
    job = await enqueue_job(session, "job")
    _, lease = await lease_job(session, "worker-1", ["default"])

    await complete_job(session, job.id, {"n": 1}, lease.lease_token)
    again = await complete_job(session, job.id, {"n": 2}, lease.lease_token)

    assert again.status == JobStatus.COMPLETED
    assert again.result == {"n": 1}


async def test_queue_config_crud(session):
    await create_queue(session, "emails", dead_letter_queue_name="emails-dlq")

    with pytest.raises(ConflictError):
        await create_queue(session, "emails")

    queue = await update_queue(session, "emails", {"rate_limit_per_minute": 5, "dead_letter_queue_name": None})
    assert queue.rate_limit_per_minute == 5
    assert queue.dead_letter_queue_name is None

    config = await get_queue_config(session, "emails")
    assert config.configured
    assert config.rate_limit_per_minute == 5

    implicit = await get_queue_config(session, "never-configured")
    assert not implicit.configured
    assert implicit.is_active


async def test_queue_validation(session):
    with pytest.raises(ValidationError):
        await create_queue(session, "loop", dead_letter_queue_name="loop")
    with pytest.raises(ValidationError):
        await create_queue(session, "bad", allowed_priorities=["urgent"])
    with pytest.raises(QueueNotFoundError):
        await update_queue(session, "missing", {"is_active": False})
