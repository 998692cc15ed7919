import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from app.api.v1.metrics import LEADER_STATUS
from app.db.session import AsyncSessionLocal, engine as default_engine
from app.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from app.settings import settings
from app.utils.clock import utcnow
from app.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    def __init__(
        self,
        interval: Optional[int] = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        engine: AsyncEngine = default_engine,
    ):
        self.interval = interval if interval is not None else settings.SCHEDULER_INTERVAL_SECONDS
        self.session_factory = session_factory
        self.engine = engine
        self._running = False
        self._task = None
        self._is_leader = False
        self._lock_conn: Optional[AsyncConnection] = None
        self._last_cleanup: Optional[datetime] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release_lock_conn()
        logger.info("Scheduler service stopped.")

    async def tick(self) -> None:
        """One scheduler iteration: leader election, maintenance, gauges."""
        if self._lock_conn is None:
            self._lock_conn = await self.engine.connect()

        # Session-level lock: re-acquiring while held returns True
        is_leader = await try_advisory_lock(self._lock_conn)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Running maintenance.")
                self._is_leader = True
            LEADER_STATUS.set(1)

            async with self.session_factory() as session:
                await run_leader_tasks(session, cleanup=self._cleanup_due())
        else:
            if self._is_leader:
                logger.info("Lost leadership. Maintenance paused.")
                self._is_leader = False
            LEADER_STATUS.set(0)

        # Gauges on all instances
        async with self.session_factory() as session:
            await run_metrics_tasks(session)

    def _cleanup_due(self) -> bool:
        interval = settings.CLEANUP_INTERVAL_SECONDS
        if not interval:
            return False
        now = utcnow()
        if self._last_cleanup is None or now - self._last_cleanup >= timedelta(seconds=interval):
            self._last_cleanup = now
            return True
        return False

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # If DB error, drop the lock connection and reconnect next tick
                await self._release_lock_conn()

            await asyncio.sleep(self.interval)

    async def _release_lock_conn(self):
        if self._lock_conn is not None:
            try:
                await self._lock_conn.close()
            except Exception as e:
                logger.warning(f"Error closing leader lock connection: {e}")
            self._lock_conn = None
