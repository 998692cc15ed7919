import asyncio
import json
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from app.commands.complete_job import complete_job
from app.commands.enqueue import enqueue_job
from app.commands.lease_job import lease_job
from app.db.models import OutboxEvent, Webhook, WebhookEvent
from app.domain.errors import InvalidJobStateError, ValidationError
from app.domain.signing import sign_payload
from app.domain.states import WebhookEventStatus
from app.services.outbox import PUBLISHED, OutboxProcessor
from app.webhooks import service
from app.webhooks.delivery import WebhookDeliveryProcessor
from app.webhooks.sender import deliver, is_retryable_status, send_test


def _webhook(**overrides) -> Webhook:
    values = {
        "id": uuid4(),
        "name": "CRM sync",
        "url": "https://hooks.acme.test/crm",
        "method": "POST",
        "headers": {"X-Agency": "acme"},
        "secret_token": "s3cret",
        "timeout_seconds": 5,
    }
    values.update(overrides)
    return Webhook(**values)


def _recording_transport(status_code=200, body="ok"):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, text=body)

    return httpx.MockTransport(handler), seen


def _failing_transport(exc):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return httpx.MockTransport(handler)


# ---- Sender ----

async def test_deliver_signs_body():
    transport, seen = _recording_transport()
    webhook = _webhook()

    result = await deliver(webhook, "invoice.paid", {"invoice_id": 7}, delivery_id="d-1", transport=transport)

    assert result.success
    assert result.status_code == 200
    assert result.response_body == "ok"

    request = seen[0]
    assert request.method == "POST"
    assert request.headers["X-Webhook-Event"] == "invoice.paid"
    assert request.headers["X-Webhook-Delivery"] == "d-1"
    assert request.headers["X-Agency"] == "acme"
    assert request.headers["X-Webhook-Signature"] == sign_payload("s3cret", request.content)

    body = json.loads(request.content)
    assert body["event_type"] == "invoice.paid"
    assert body["data"] == {"invoice_id": 7}
    assert body["webhook"] == {"id": str(webhook.id), "name": "CRM sync"}
    assert result.request_body == request.content.decode()


async def test_get_delivery_has_no_body():
    transport, seen = _recording_transport()

    result = await deliver(_webhook(method="GET"), "task.created", {"id": 1}, transport=transport)

    assert result.success
    assert seen[0].method == "GET"
    assert seen[0].content == b""
    assert seen[0].headers["X-Webhook-Signature"] == sign_payload("s3cret", b"")
    assert result.request_body is None


async def test_unsigned_without_secret():
    transport, seen = _recording_transport()

    await deliver(_webhook(secret_token=None), "task.created", {}, transport=transport)

    assert "X-Webhook-Signature" not in seen[0].headers


@pytest.mark.parametrize("status_code, retryable", [
    (500, True),
    (503, True),
    (429, True),
    (408, True),
    (302, True),
    (400, False),
    (401, False),
    (404, False),
])
async def test_failed_status_classification(status_code, retryable):
    transport, _ = _recording_transport(status_code, "nope")

    result = await deliver(_webhook(), "task.created", {}, transport=transport)

    assert not result.success
    assert result.status_code == status_code
    assert result.error == f"HTTP {status_code}"
    assert result.retryable is retryable
    assert is_retryable_status(status_code) is retryable


async def test_connection_error_is_retryable():
    transport = _failing_transport(httpx.ConnectError("connection refused"))

    result = await deliver(_webhook(), "task.created", {}, transport=transport)

    assert not result.success
    assert result.status_code is None
    assert result.retryable
    assert "ConnectError" in result.error


async def test_timeout_is_final():
    transport = _failing_transport(httpx.ReadTimeout("too slow"))

    result = await deliver(_webhook(timeout_seconds=3), "task.created", {}, transport=transport)

    assert not result.success
    assert not result.retryable
    assert result.error == "Request timeout after 3s"


async def test_send_test_truncates_response():
    transport, seen = _recording_transport(200, "x" * 5000)

    result = await send_test(_webhook(), transport=transport)

    assert result.success
    assert len(result.response_body) == 1000
    assert seen[0].headers["X-Webhook-Event"] == "webhook.test"
    assert seen[0].headers["User-Agent"] == "AgencyJobs-Webhook-Test/1.0"


# ---- Fan-out ----

async def test_create_webhook_validation(session):
    with pytest.raises(ValidationError):
        await service.create_webhook(session, "bad", "ftp://hooks.acme.test", ["task.created"])
    with pytest.raises(ValidationError):
        await service.create_webhook(session, "bad", "https://hooks.acme.test", [])
    with pytest.raises(ValidationError):
        await service.create_webhook(session, "bad", "https://hooks.acme.test", ["*"], method="TRACE")


async def test_trigger_event_fans_out(session, agency):
    tasks = await service.create_webhook(session, "tasks", "https://a.test", ["task.created"], agency_id=agency.id)
    everything = await service.create_webhook(session, "all", "https://b.test", ["*"], agency_id=agency.id)
    await service.create_webhook(session, "invoices", "https://c.test", ["invoice.paid"], agency_id=agency.id)
    await service.create_webhook(session, "paused", "https://d.test", ["*"], agency_id=agency.id, is_active=False)
    await service.create_webhook(session, "other agency", "https://e.test", ["*"], agency_id="someone-else")

    deliveries = await service.trigger_event(session, "task.created", {"id": 1}, agency.id)

    assert {d.webhook_id for d in deliveries} == {tasks.id, everything.id}
    for delivery in deliveries:
        assert delivery.status == WebhookEventStatus.PENDING
        assert delivery.attempt_number == 1
        assert delivery.next_retry_at is not None


async def test_filters_gate_delivery(session):
    await service.create_webhook(
        session, "paris only", "https://a.test", ["client.created"],
        filters={"client.address.city": "Paris"},
    )

    assert await service.trigger_event(session, "client.created", {"client": {"address": {"city": "Lyon"}}}) == []
    assert len(await service.trigger_event(session, "client.created", {"client": {"address": {"city": "Paris"}}})) == 1


# ---- Delivery processor ----

async def _trigger(session, **webhook_fields):
    webhook = await service.create_webhook(session, "hook", "https://hooks.acme.test", ["task.created"], **webhook_fields)
    [event] = await service.trigger_event(session, "task.created", {"id": 1})
    await session.commit()
    return webhook, event


async def test_processor_records_success(session, session_factory):
    webhook, event = await _trigger(session, secret_token="s3cret")
    transport, seen = _recording_transport(204, "")

    processor = WebhookDeliveryProcessor(session_factory=session_factory, transport=transport)
    assert await processor.process_batch() == 1

    await session.refresh(event)
    await session.refresh(webhook)
    assert event.status == WebhookEventStatus.SUCCESS
    assert event.http_status_code == 204
    assert event.completed_at is not None
    assert event.next_retry_at is None
    assert event.request_headers["X-Webhook-Delivery"] == str(event.id)
    assert webhook.total_requests == 1
    assert webhook.successful_requests == 1
    assert webhook.last_triggered is not None
    assert len(seen) == 1

    # Nothing left to send
    await session.commit()
    assert await processor.process_batch() == 0


async def test_processor_sends_batch_concurrently(session, session_factory):
    for name in ("crm", "billing", "slack"):
        await service.create_webhook(session, name, f"https://hooks.acme.test/{name}", ["task.created"])
    deliveries = await service.trigger_event(session, "task.created", {"id": 7})
    await session.commit()

    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1
        return httpx.Response(200, text="ok")

    processor = WebhookDeliveryProcessor(session_factory=session_factory, transport=httpx.MockTransport(handler))
    assert await processor.process_batch() == 3

    assert peak == 3
    for delivery in deliveries:
        await session.refresh(delivery)
        assert delivery.status == WebhookEventStatus.SUCCESS


async def test_processor_concurrency_limit(session, session_factory):
    for name in ("crm", "billing", "slack"):
        await service.create_webhook(session, name, f"https://hooks.acme.test/{name}", ["task.created"])
    await service.trigger_event(session, "task.created", {"id": 7})
    await session.commit()

    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        return httpx.Response(200, text="ok")

    processor = WebhookDeliveryProcessor(
        session_factory=session_factory, concurrency=1, transport=httpx.MockTransport(handler)
    )
    assert await processor.process_batch() == 3
    assert peak == 1


async def test_processor_retries_then_fails(session, session_factory):
    webhook, event = await _trigger(session, retry_attempts=2, retry_delay_seconds=0)
    transport, seen = _recording_transport(503, "unavailable")
    processor = WebhookDeliveryProcessor(session_factory=session_factory, transport=transport)

    await processor.process_batch()
    await session.refresh(event)
    assert event.status == WebhookEventStatus.RETRYING
    assert event.attempt_number == 2
    assert event.error_message == "HTTP 503"
    await session.commit()

    await processor.process_batch()
    await session.refresh(event)
    await session.refresh(webhook)
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempt_number == 2
    assert webhook.total_requests == 2
    assert webhook.failed_requests == 2
    assert len(seen) == 2


async def test_retry_waits_for_backoff(session, session_factory):
    _, event = await _trigger(session, retry_delay_seconds=300)
    transport, seen = _recording_transport(500)
    processor = WebhookDeliveryProcessor(session_factory=session_factory, transport=transport)

    await processor.process_batch()
    await session.commit()

    assert await processor.process_batch() == 0
    assert len(seen) == 1


async def test_client_error_fails_immediately(session, session_factory):
    _, event = await _trigger(session, retry_attempts=5)
    transport, _ = _recording_transport(401, "unauthorized")

    await WebhookDeliveryProcessor(session_factory=session_factory, transport=transport).process_batch()

    await session.refresh(event)
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempt_number == 1
    assert event.http_status_code == 401
    assert event.response_body == "unauthorized"


async def test_inactive_webhook_is_not_called(session, session_factory):
    webhook, event = await _trigger(session)
    webhook.is_active = False
    await session.commit()
    transport, seen = _recording_transport()

    await WebhookDeliveryProcessor(session_factory=session_factory, transport=transport).process_batch()

    await session.refresh(event)
    assert event.status == WebhookEventStatus.FAILED
    assert event.error_message == "Webhook inactive"
    assert seen == []


async def test_manual_retry(session, session_factory):
    _, event = await _trigger(session)
    transport, _ = _recording_transport(404)
    await WebhookDeliveryProcessor(session_factory=session_factory, transport=transport).process_batch()
    await session.refresh(event)

    await service.retry_event(session, event.id)

    assert event.status == WebhookEventStatus.RETRYING
    assert event.attempt_number == 2
    assert event.completed_at is None

    event.status = WebhookEventStatus.SENDING
    with pytest.raises(InvalidJobStateError):
        await service.retry_event(session, event.id)


async def test_webhook_stats(session, session_factory):
    _, event = await _trigger(session)
    transport, _ = _recording_transport(200)
    await WebhookDeliveryProcessor(session_factory=session_factory, transport=transport).process_batch()

    stats = await service.get_webhook_stats(session)

    assert stats["total_webhooks"] == 1
    assert stats["active_webhooks"] == 1
    assert stats["total_events"] == 1
    assert stats["successful_events"] == 1
    assert stats["success_rate"] == 100.0
    assert stats["events_last_24h"] == 1


# ---- Outbox ----

async def test_job_outcome_reaches_webhooks(session, session_factory):
    webhook = await service.create_webhook(session, "jobs", "https://hooks.acme.test", ["job.completed"])
    job = await enqueue_job(session, "send_email")
    _, lease = await lease_job(session, "worker-1", ["default"])
    await complete_job(session, job.id, {"sent": 3}, lease.lease_token)
    await session.commit()

    assert await OutboxProcessor(session_factory=session_factory).process_batch() == 1

    outbox = await session.scalar(select(OutboxEvent).execution_options(populate_existing=True))
    assert outbox.status == PUBLISHED
    assert outbox.published_at is not None

    delivery = await session.scalar(select(WebhookEvent).where(WebhookEvent.webhook_id == webhook.id))
    assert delivery.event_type == "job.completed"
    assert delivery.event_data["job_id"] == str(job.id)
    assert delivery.status == WebhookEventStatus.PENDING
