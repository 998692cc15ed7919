import asyncio
import inspect
import logging
import os
import signal
import socket
from typing import Any, Callable, Dict, List, Optional, Set

from jobworker.client import WorkerClient
from jobworker.runner import COMPLETED, Handler, JobContext, JobRunner, Middleware

logger = logging.getLogger(__name__)

EVENTS = ("job_started", "job_completed", "job_failed")

Listener = Callable[..., Any]

class Worker:
    """
    Long-running worker process.

        worker = Worker("http://api:8000", "worker-1", queues=["emails"])

        @worker.handler("send_email")
        async def send_email(ctx):
            ...

        asyncio.run(worker.run())
    """

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        queues: List[str],
        handlers: Optional[Dict[str, Handler]] = None,
        shared_secret: Optional[str] = None,
        max_concurrent_jobs: int = 5,
        hostname: Optional[str] = None,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 10.0,
        version: Optional[str] = None,
        environment: str = "development",
        client: Optional[WorkerClient] = None,
    ):
        hostname = hostname or socket.gethostname()
        self.client = client or WorkerClient(base_url, worker_id, shared_secret=shared_secret, hostname=hostname)
        self.queues = list(queues)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.version = version
        self.environment = environment

        self.runner = JobRunner(self.client, handlers, heartbeat_interval=heartbeat_interval)
        self.running = False
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}
        self._active: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self.client.worker_id

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    # ---- Registration ----

    def handler(self, job_type: str):
        def decorator(fn: Handler) -> Handler:
            self.add_handler(job_type, fn)
            return fn
        return decorator

    def add_handler(self, job_type: str, fn: Handler):
        self.runner.handlers[job_type] = fn

    def add_middleware(self, middleware: Middleware):
        self.runner.middlewares.append(middleware)

    def on(self, event: str, listener: Listener):
        """Listeners get the JobContext; job_failed listeners also get the outcome."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}', expected one of {', '.join(EVENTS)}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, *args):
        for listener in self._listeners[event]:
            try:
                res = listener(*args)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                logger.exception(f"Listener for {event} raised")

    # ---- Loop ----

    async def run(self):
        self.running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # No signal support on this platform/thread
                pass

        if not await self.client.register(
            self.queues,
            max_concurrent_jobs=self.max_concurrent_jobs,
            process_id=os.getpid(),
            version=self.version,
            environment=self.environment,
        ):
            logger.warning(f"Worker {self.worker_id} could not register; polling anyway")

        logger.info(f"Worker {self.worker_id} started (queues: {', '.join(self.queues)})")
        beat = asyncio.create_task(self._heartbeat_loop())

        try:
            while self.running:
                if self.active_jobs >= self.max_concurrent_jobs:
                    await self._wait(self.poll_interval)
                    continue

                leased = await self.client.poll(self.queues)
                if not leased:
                    await self._wait(self.poll_interval)
                    continue

                task = asyncio.create_task(self._execute(leased))
                self._active.add(task)
                task.add_done_callback(self._active.discard)
        finally:
            await self._drain()
            beat.cancel()
            try:
                await beat
            except asyncio.CancelledError:
                pass
            await self.client.stop(graceful=False)
            await self.client.close()
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self):
        if not self.running:
            return
        logger.info("Shutdown signal received, finishing in-flight jobs")
        self.running = False
        self._shutdown_event.set()

    async def _wait(self, seconds: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _drain(self):
        if not self._active:
            return
        await self.client.stop(graceful=True)
        logger.info(f"Waiting for {len(self._active)} in-flight jobs")
        await asyncio.gather(*self._active, return_exceptions=True)

    async def _heartbeat_loop(self):
        while True:
            await self.client.worker_heartbeat(self.active_jobs)
            await asyncio.sleep(self.heartbeat_interval)

    async def _execute(self, leased: Dict[str, Any]):
        try:
            ctx = JobContext.from_lease(leased)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Received malformed job payload: {e}")
            return

        logger.info(f"Processing job {ctx.job_id} ({ctx.job_type})")
        await self._emit("job_started", ctx)

        outcome = await self.runner.dispatch(ctx)

        if outcome == COMPLETED:
            await self._emit("job_completed", ctx)
        else:
            await self._emit("job_failed", ctx, outcome)
