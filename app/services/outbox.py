import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import AsyncSessionLocal
from app.db.models import OutboxEvent
from app.settings import settings
from app.utils.clock import utcnow
from app.webhooks.service import trigger_event

logger = logging.getLogger(__name__)

PENDING = "PENDING"
PUBLISHED = "PUBLISHED"

class OutboxProcessor:
    """
    Publishes job state changes written to the outbox in the same
    transaction, by fanning them out as webhook deliveries.
    """

    def __init__(
        self,
        interval: float | None = None,
        batch_size: int = 50,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self.interval = interval if interval is not None else settings.OUTBOX_INTERVAL_SECONDS
        self.batch_size = batch_size
        self.session_factory = session_factory
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("OutboxProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("OutboxProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                processed_count = await self.process_batch()
                if processed_count == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in OutboxProcessor: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                # 1. Select Pending Events with Lock
                stmt = (
                    select(OutboxEvent)
                    .where(OutboxEvent.status == PENDING)
                    .order_by(OutboxEvent.id.asc())
                    .with_for_update(skip_locked=True)
                    .limit(self.batch_size)
                )
                events = (await session.execute(stmt)).scalars().all()

                if not events:
                    return 0

                # 2. Fan out as webhook deliveries, same transaction as the status flip
                for event in events:
                    deliveries = await trigger_event(session, event.event_type, event.payload, event.agency_id)
                    event.status = PUBLISHED
                    event.published_at = utcnow()
                    logger.debug(f"Outbox event {event.id} ({event.event_type}) published to {len(deliveries)} webhooks")

                return len(events)
