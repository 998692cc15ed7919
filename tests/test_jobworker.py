import asyncio
import json
from uuid import UUID, uuid4

import httpx
import pytest

from app.domain.signing import sign_payload
from jobworker import JobContext, JobRunner, PermanentJobError, Worker, WorkerClient
from jobworker.runner import COMPLETED, FAILED, LEASE_LOST


def _lease(job_type="send_email", timeout_seconds=30, **job_fields):
    job = {
        "id": str(uuid4()),
        "job_type": job_type,
        "payload": {"to": "ops@acme.test"},
        "queue_name": "emails",
        "attempt_count": 2,
        "max_attempts": 3,
        "timeout_seconds": timeout_seconds,
        "context": None,
        **job_fields,
    }
    return {"job": job, "lease_token": str(uuid4()), "expires_at": "2026-01-01T00:00:00Z"}


class FakeClient:
    """Records protocol calls instead of sending them."""

    worker_id = "fake-worker"

    def __init__(self, leases=None, heartbeat_result=True):
        self.leases = list(leases or [])
        self.heartbeat_result = heartbeat_result
        self.completed = []
        self.failed = []
        self.heartbeats = []
        self.calls = []

    async def register(self, queues, **kwargs):
        self.calls.append(("register", list(queues)))
        return True

    async def worker_heartbeat(self, active_jobs=0):
        return True

    async def stop(self, graceful=False):
        self.calls.append(("stop", graceful))
        return True

    async def poll(self, queues=None, lease_duration=None):
        return self.leases.pop(0) if self.leases else None

    async def heartbeat(self, job_id, lease_token, extend_seconds=60, progress=None):
        self.heartbeats.append(progress)
        return self.heartbeat_result

    async def complete(self, job_id, lease_token, result=None):
        self.completed.append((job_id, result))
        return True

    async def fail(self, job_id, lease_token, error, error_details=None, retryable=True):
        self.failed.append({"job_id": job_id, "error": error, "error_details": error_details, "retryable": retryable})
        return True

    async def close(self):
        self.calls.append(("close",))


# ---- JobContext ----

def test_context_from_lease():
    lease = _lease()

    ctx = JobContext.from_lease(lease)

    assert ctx.job_id == UUID(lease["job"]["id"])
    assert ctx.lease_token == UUID(lease["lease_token"])
    assert ctx.queue_name == "emails"
    assert ctx.attempt == 2
    assert ctx.max_attempts == 3
    assert ctx.context == {}

    ctx.report_progress(3, 10, "Rendering")
    assert ctx.progress == {"progress_current": 3, "progress_total": 10, "progress_message": "Rendering"}


# ---- JobRunner ----

async def test_successful_job_is_completed():
    client = FakeClient()

    async def send_email(ctx):
        return {"sent_to": ctx.payload["to"]}

    runner = JobRunner(client, {"send_email": send_email})
    lease = _lease()

    assert await runner.run(lease) == COMPLETED
    assert client.completed == [(UUID(lease["job"]["id"]), {"sent_to": "ops@acme.test"})]
    assert client.failed == []


async def test_handler_exception_is_retryable_failure():
    client = FakeClient()

    async def broken(ctx):
        raise ValueError("template missing")

    runner = JobRunner(client, {"send_email": broken})

    assert await runner.run(_lease()) == FAILED
    [failure] = client.failed
    assert failure["error"] == "ValueError: template missing"
    assert failure["error_details"] == {"type": "ValueError"}
    assert failure["retryable"] is True
    assert client.completed == []


async def test_permanent_error_is_not_retried():
    client = FakeClient()

    async def invalid(ctx):
        raise PermanentJobError("Recipient address is invalid")

    runner = JobRunner(client, {"send_email": invalid})

    assert await runner.run(_lease()) == FAILED
    [failure] = client.failed
    assert failure["error"] == "Recipient address is invalid"
    assert failure["retryable"] is False


async def test_missing_handler_fails_permanently():
    client = FakeClient()
    runner = JobRunner(client, {})

    assert await runner.run(_lease(job_type="unknown_type")) == FAILED
    [failure] = client.failed
    assert failure["error"] == "No handler registered for job type: unknown_type"
    assert failure["retryable"] is False


async def test_handler_timeout():
    client = FakeClient()

    async def slow(ctx):
        await asyncio.sleep(5)

    runner = JobRunner(client, {"send_email": slow})

    assert await runner.run(_lease(timeout_seconds=0.05)) == FAILED
    [failure] = client.failed
    assert failure["error"] == "Job timed out after 0.05s"
    assert failure["retryable"] is True


async def test_middleware_order():
    client = FakeClient()
    trail = []

    def layer(name):
        async def middleware(ctx, next_call):
            trail.append(f"{name} in")
            result = await next_call(ctx)
            trail.append(f"{name} out")
            return result
        return middleware

    async def handler(ctx):
        trail.append("handler")
        return "done"

    runner = JobRunner(client, {"send_email": handler}, middlewares=[layer("outer"), layer("inner")])

    assert await runner.run(_lease()) == COMPLETED
    assert trail == ["outer in", "inner in", "handler", "inner out", "outer out"]
    assert client.completed[0][1] == "done"


async def test_progress_travels_with_heartbeats():
    client = FakeClient()

    async def report(ctx):
        ctx.report_progress(5, 10, "Halfway")
        await asyncio.sleep(0.1)

    runner = JobRunner(client, {"send_email": report}, heartbeat_interval=0.01)

    assert await runner.run(_lease()) == COMPLETED
    assert {"progress_current": 5, "progress_total": 10, "progress_message": "Halfway"} in client.heartbeats


async def test_lost_lease_abandons_job():
    client = FakeClient(heartbeat_result=False)
    finished = []

    async def long_running(ctx):
        await asyncio.sleep(5)
        finished.append(ctx.job_id)

    runner = JobRunner(client, {"send_email": long_running}, heartbeat_interval=0.01)

    assert await runner.run(_lease()) == LEASE_LOST
    assert finished == []
    assert client.completed == []
    assert client.failed == []


async def test_unreachable_heartbeat_keeps_working():
    client = FakeClient(heartbeat_result=None)

    async def handler(ctx):
        await asyncio.sleep(0.05)
        return "ok"

    runner = JobRunner(client, {"send_email": handler}, heartbeat_interval=0.01)

    assert await runner.run(_lease()) == COMPLETED
    assert client.heartbeats


# ---- Worker ----

async def test_worker_processes_and_shuts_down():
    lease = _lease()
    client = FakeClient(leases=[lease])
    worker = Worker("http://api.test", "worker-1", ["emails"], client=client, poll_interval=0.01)
    events = []

    @worker.handler("send_email")
    async def send_email(ctx):
        return {"ok": True}

    worker.on("job_started", lambda ctx: events.append(("started", str(ctx.job_id))))

    async def on_completed(ctx):
        events.append(("completed", str(ctx.job_id)))
        worker.stop()

    worker.on("job_completed", on_completed)

    await asyncio.wait_for(worker.run(), timeout=5)

    job_id = lease["job"]["id"]
    assert events == [("started", job_id), ("completed", job_id)]
    assert client.completed == [(UUID(job_id), {"ok": True})]
    assert client.calls[0] == ("register", ["emails"])
    assert ("stop", False) in client.calls
    assert client.calls[-1] == ("close",)
    assert worker.active_jobs == 0


async def test_worker_reports_failures_to_listeners():
    client = FakeClient(leases=[_lease(job_type="unregistered")])
    worker = Worker("http://api.test", "worker-1", ["emails"], client=client, poll_interval=0.01)
    outcomes = []

    def on_failed(ctx, outcome):
        outcomes.append(outcome)
        worker.stop()

    worker.on("job_failed", on_failed)

    await asyncio.wait_for(worker.run(), timeout=5)

    assert outcomes == [FAILED]


def test_unknown_listener_event():
    worker = Worker("http://api.test", "worker-1", ["emails"], client=FakeClient())

    with pytest.raises(ValueError):
        worker.on("job_exploded", lambda ctx: None)


# ---- WorkerClient ----

def _client(handler, secret=None):
    return WorkerClient(
        "http://api.test/",
        "worker-1",
        shared_secret=secret,
        hostname="host-a",
        transport=httpx.MockTransport(handler),
    )


async def test_client_poll_signs_request():
    seen = []
    leased = _lease()

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": leased, "message": None})

    client = _client(handler, secret="shh")
    try:
        assert await client.poll(["emails"], lease_duration=120) == leased
    finally:
        await client.close()

    request = seen[0]
    assert request.url.path == "/api/workers/poll"
    assert request.headers["X-Worker-Signature"] == sign_payload("shh", request.content)
    assert json.loads(request.content) == {
        "worker_id": "worker-1",
        "hostname": "host-a",
        "queues": ["emails"],
        "lease_duration_seconds": 120,
    }


async def test_client_poll_without_job():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "data": None, "message": "No job available"})

    client = _client(handler)
    try:
        assert await client.poll() is None
    finally:
        await client.close()


@pytest.mark.parametrize("status_code, expected", [(200, True), (409, False), (404, False), (500, None)])
async def test_client_heartbeat_outcomes(status_code, expected):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(status_code, json={"success": status_code == 200})

    client = _client(handler)
    job_id, token = uuid4(), uuid4()
    try:
        result = await client.heartbeat(job_id, token, 90, {"progress_current": 4, "progress_message": None})
    finally:
        await client.close()

    assert result is expected
    assert seen[0] == {"lease_token": str(token), "extend_seconds": 90, "progress_current": 4}


async def test_client_swallows_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    client = _client(handler)
    try:
        assert await client.register(["emails"]) is False
        assert await client.poll() is None
        assert await client.heartbeat(uuid4(), uuid4()) is None
        assert await client.complete(uuid4(), uuid4(), {"ok": True}) is False
    finally:
        await client.close()


async def test_client_ack_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"success": False, "error": "Lease lost"})

    client = _client(handler)
    try:
        assert await client.fail(uuid4(), uuid4(), "boom") is False
    finally:
        await client.close()
