from datetime import timedelta

import pytest
from sqlalchemy import select

from app.commands.enqueue import enqueue_job
from app.commands.fail_job import fail_job
from app.commands.lease_job import lease_job
from app.commands.manage import cancel_job, get_job, list_executions, list_job_events, retry_job
from app.commands.queues import create_queue
from app.db.models import JobLease, OutboxEvent
from app.domain.errors import InvalidJobStateError, JobNotFoundError
from app.domain.states import JobEvent, JobStatus
from app.utils.clock import as_utc, utcnow


async def _lease(session, queue="default", worker="worker-1"):
    result = await lease_job(session, worker, [queue])
    assert result is not None
    return result


async def test_retryable_failure_schedules_backoff(session):
    job = await enqueue_job(session, "flaky")
    _, lease = await _lease(session)

    before = utcnow()
    await fail_job(session, job.id, "SMTP timeout", lease.lease_token)

    assert job.status == JobStatus.RETRYING
    assert job.error_message == "SMTP timeout"
    # Default base delay is 60s for the first retry
    assert as_utc(job.scheduled_at) >= before + timedelta(seconds=60)
    assert await session.scalar(select(JobLease).where(JobLease.job_id == job.id)) is None
    # Not runnable until the backoff elapses
    assert await lease_job(session, "worker-1", ["default"]) is None


async def test_failure_after_last_attempt_is_final(session):
    job = await enqueue_job(session, "flaky", max_attempts=1)
    _, lease = await _lease(session)

    await fail_job(session, job.id, "boom", lease.lease_token)

    assert job.status == JobStatus.FAILED
    assert job.failed_at is not None
    outbox = (await session.scalars(select(OutboxEvent))).all()
    assert [e.event_type for e in outbox] == ["job.failed"]


async def test_non_retryable_failure_skips_remaining_attempts(session):
    job = await enqueue_job(session, "flaky", max_attempts=5)
    _, lease = await _lease(session)

    await fail_job(session, job.id, "Invalid payload", lease.lease_token, retryable=False)

    assert job.status == JobStatus.FAILED
    assert job.attempt_count == 1


async def test_retried_until_max_attempts(session):
    await create_queue(session, "fast", retry_delay_base_seconds=0, retry_delay_max_seconds=0)
    job = await enqueue_job(session, "flaky", queue="fast", max_attempts=3)

    statuses = []
    for attempt in range(3):
        leased, lease = await _lease(session, "fast")
        assert leased.attempt_count == attempt + 1
        await fail_job(session, job.id, f"failure {attempt}", lease.lease_token)
        statuses.append(job.status)

    assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.FAILED]
    assert len(await list_executions(session, job.id)) == 3


async def test_exhausted_job_moves_to_dead_letter_queue(session):
    await create_queue(session, "emails", dead_letter_queue_name="emails-dlq")
    job = await enqueue_job(session, "send_email", queue="emails", max_attempts=1)
    _, lease = await _lease(session, "emails")

    await fail_job(session, job.id, "Mailbox full", lease.lease_token)

    assert job.status == JobStatus.FAILED
    assert job.queue_name == "emails-dlq"
    assert job.context["dead_letter"]["original_queue"] == "emails"
    events = [e.event_type for e in await list_job_events(session, job.id)]
    assert JobEvent.DEAD_LETTERED in events


async def test_dead_letter_threshold_before_attempts_run_out(session):
    await create_queue(
        session, "imports",
        dead_letter_queue_name="imports-dlq",
        dead_letter_after_attempts=2,
        retry_delay_base_seconds=0,
        retry_delay_max_seconds=0,
    )
    early = await enqueue_job(session, "import", queue="imports", max_attempts=5)
    _, lease = await _lease(session, "imports")

    # Below the threshold a final failure stays in its queue
    await fail_job(session, early.id, "Bad CSV header", lease.lease_token, retryable=False)
    assert early.status == JobStatus.FAILED
    assert early.queue_name == "imports"

    job = await enqueue_job(session, "import", queue="imports", max_attempts=5)
    _, lease = await _lease(session, "imports")
    await fail_job(session, job.id, "Upstream unavailable", lease.lease_token)
    assert job.status == JobStatus.RETRYING

    leased, lease = await _lease(session, "imports")
    assert leased.id == job.id
    await fail_job(session, job.id, "Bad CSV header", lease.lease_token, retryable=False)

    assert job.status == JobStatus.FAILED
    assert job.attempt_count == 2
    assert job.queue_name == "imports-dlq"
    assert job.context["dead_letter"]["original_queue"] == "imports"


async def test_fail_requires_processing_job(session):
    job = await enqueue_job(session, "job")

    with pytest.raises(InvalidJobStateError):
        await fail_job(session, job.id, "nope")


async def test_manual_retry_returns_dead_lettered_job_to_origin(session):
    await create_queue(session, "emails", dead_letter_queue_name="emails-dlq")
    job = await enqueue_job(session, "send_email", queue="emails", max_attempts=1)
    _, lease = await _lease(session, "emails")
    await fail_job(session, job.id, "Mailbox full", lease.lease_token)

    await retry_job(session, job.id)

    assert job.status == JobStatus.PENDING
    assert job.queue_name == "emails"
    assert job.attempt_count == 0
    assert job.error_message is None
    assert "dead_letter" not in job.context

    leased, _ = await _lease(session, "emails")
    assert leased.id == job.id


async def test_only_failed_jobs_can_be_retried(session):
    job = await enqueue_job(session, "job")

    with pytest.raises(InvalidJobStateError):
        await retry_job(session, job.id)


async def test_cancel_pending_job(session):
    job = await enqueue_job(session, "job")

    await cancel_job(session, job.id)

    assert job.status == JobStatus.CANCELLED
    assert job.completed_at is not None
    assert await lease_job(session, "worker-1", ["default"]) is None


async def test_cancel_processing_job_releases_lease(session):
    job = await enqueue_job(session, "job")
    await _lease(session)

    await cancel_job(session, job.id)

    assert job.status == JobStatus.CANCELLED
    assert await session.scalar(select(JobLease).where(JobLease.job_id == job.id)) is None
    executions = await list_executions(session, job.id)
    assert executions[0].status == JobStatus.CANCELLED


async def test_cancel_twice_is_noop(session):
    job = await enqueue_job(session, "job")
    await cancel_job(session, job.id)

    again = await cancel_job(session, job.id)

    assert again.status == JobStatus.CANCELLED


async def test_completed_job_cannot_be_cancelled(session):
    job = await enqueue_job(session, "job")
    job.status = JobStatus.COMPLETED
    await session.flush()

    with pytest.raises(InvalidJobStateError):
        await cancel_job(session, job.id)


async def test_other_agency_cannot_see_job(session, agency):
    job = await enqueue_job(session, "job", agency_id=agency.id)

    assert (await get_job(session, job.id, agency.id)).id == job.id
    with pytest.raises(JobNotFoundError):
        await get_job(session, job.id, "someone-else")
