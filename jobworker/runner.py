import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from jobworker.client import WorkerClient

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
LEASE_LOST = "lease_lost"

class PermanentJobError(Exception):
    """Raised by a handler when retrying the job cannot succeed."""

@dataclass
class JobContext:
    job_id: UUID
    job_type: str
    payload: Dict[str, Any]
    lease_token: UUID
    queue_name: Optional[str] = None
    attempt: int = 1
    max_attempts: int = 1
    timeout_seconds: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)
    progress: Dict[str, Any] = field(default_factory=dict)
    lease_lost: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def from_lease(cls, data: Dict[str, Any]) -> "JobContext":
        job = data["job"]
        return cls(
            job_id=UUID(str(job["id"])),
            job_type=job["job_type"],
            payload=job.get("payload") or {},
            lease_token=UUID(str(data["lease_token"])),
            queue_name=job.get("queue_name"),
            attempt=job.get("attempt_count") or 1,
            max_attempts=job.get("max_attempts") or 1,
            timeout_seconds=job.get("timeout_seconds"),
            context=job.get("context") or {},
        )

    def report_progress(self, current: int, total: Optional[int] = None, message: Optional[str] = None):
        """Recorded now, sent with the next lease heartbeat."""
        self.progress = {
            "progress_current": current,
            "progress_total": total,
            "progress_message": message,
        }

Handler = Callable[[JobContext], Awaitable[Any]]
Next = Callable[[JobContext], Awaitable[Any]]
Middleware = Callable[[JobContext, Next], Awaitable[Any]]

class JobRunner:
    """
    Executes a single leased job: handler lookup, middleware chain,
    timeout, lease heartbeats, and the final complete/fail ack.
    """

    def __init__(
        self,
        client: WorkerClient,
        handlers: Optional[Dict[str, Handler]] = None,
        middlewares: Optional[List[Middleware]] = None,
        heartbeat_interval: float = 10.0,
        lease_extension: int = 60,
    ):
        self.client = client
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.middlewares: List[Middleware] = list(middlewares or [])
        self.heartbeat_interval = heartbeat_interval
        self.lease_extension = lease_extension

    def _build_chain(self, handler: Handler) -> Next:
        # Onion order: first middleware registered is the outermost layer
        chain: Next = handler
        for mw in reversed(self.middlewares):
            chain = self._wrap(mw, chain)
        return chain

    @staticmethod
    def _wrap(mw: Middleware, next_call: Next) -> Next:
        async def wrapped(ctx: JobContext):
            return await mw(ctx, next_call)
        return wrapped

    async def _heartbeat_loop(self, ctx: JobContext, work: asyncio.Task):
        while not work.done():
            await asyncio.sleep(self.heartbeat_interval)
            if work.done():
                return
            renewed = await self.client.heartbeat(
                ctx.job_id, ctx.lease_token, self.lease_extension, ctx.progress or None,
            )
            if renewed is False:
                logger.warning(f"Lease lost for job {ctx.job_id}; abandoning execution")
                ctx.lease_lost.set()
                work.cancel()
                return
            if renewed is None:
                logger.warning(f"Heartbeat for job {ctx.job_id} did not reach the server; will retry")

    async def run(self, leased: Dict[str, Any]) -> str:
        return await self.dispatch(JobContext.from_lease(leased))

    async def dispatch(self, ctx: JobContext) -> str:
        handler = self.handlers.get(ctx.job_type)
        if handler is None:
            logger.error(f"No handler registered for job type '{ctx.job_type}' (job {ctx.job_id})")
            await self.client.fail(
                ctx.job_id, ctx.lease_token,
                f"No handler registered for job type: {ctx.job_type}",
                retryable=False,
            )
            return FAILED

        return await self.execute(ctx, handler)

    async def execute(self, ctx: JobContext, handler: Handler) -> str:
        chain = self._build_chain(handler)
        work = asyncio.create_task(asyncio.wait_for(chain(ctx), timeout=ctx.timeout_seconds))
        beat = asyncio.create_task(self._heartbeat_loop(ctx, work))

        try:
            result = await work
        except asyncio.CancelledError:
            if not ctx.lease_lost.is_set():
                raise
            # Someone else owns the job now; acking would be rejected anyway
            return LEASE_LOST
        except asyncio.TimeoutError:
            logger.warning(f"Job {ctx.job_id} timed out after {ctx.timeout_seconds}s")
            await self.client.fail(ctx.job_id, ctx.lease_token, f"Job timed out after {ctx.timeout_seconds}s")
            return FAILED
        except PermanentJobError as e:
            logger.warning(f"Job {ctx.job_id} failed permanently: {e}")
            await self.client.fail(
                ctx.job_id, ctx.lease_token, str(e),
                error_details={"type": type(e).__name__},
                retryable=False,
            )
            return FAILED
        except Exception as e:
            logger.exception(f"Job {ctx.job_id} failed")
            await self.client.fail(
                ctx.job_id, ctx.lease_token, f"{type(e).__name__}: {e}",
                error_details={"type": type(e).__name__},
            )
            return FAILED
        finally:
            beat.cancel()
            try:
                await beat
            except asyncio.CancelledError:
                pass

        if not await self.client.complete(ctx.job_id, ctx.lease_token, result):
            logger.warning(f"Completion of job {ctx.job_id} was not acknowledged")
        return COMPLETED
