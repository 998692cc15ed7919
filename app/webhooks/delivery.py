import asyncio
import logging
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.metrics import WEBHOOK_DELIVERIES
from app.db.models import Webhook, WebhookEvent
from app.db.session import AsyncSessionLocal
from app.domain.retry import compute_backoff
from app.domain.states import WebhookEventStatus
from app.settings import settings
from app.utils.clock import utcnow
from app.webhooks.sender import DeliveryResult, deliver

logger = logging.getLogger(__name__)

# A claim older than the request timeout plus this margin is considered abandoned
CLAIM_GRACE_SECONDS = 60

DUE_STATUSES = (WebhookEventStatus.PENDING, WebhookEventStatus.RETRYING, WebhookEventStatus.SENDING)

class WebhookDeliveryProcessor:
    def __init__(
        self,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.interval = interval if interval is not None else settings.WEBHOOK_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.WEBHOOK_BATCH_SIZE
        self.concurrency = concurrency or settings.WEBHOOK_CONCURRENCY
        self.session_factory = session_factory
        self.transport = transport
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("WebhookDeliveryProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("WebhookDeliveryProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                processed_count = await self.process_batch()
                if processed_count == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in WebhookDeliveryProcessor: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self) -> int:
        """
        Claims due deliveries and sends them concurrently. No transaction is
        held while a request is in flight; each result is recorded in its own
        transaction as soon as that request finishes. Returns the number claimed.
        """
        claimed = await self._claim()
        if not claimed:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [asyncio.create_task(self._send(semaphore, event, webhook)) for event, webhook in claimed]
        for finished in asyncio.as_completed(tasks):
            event, result = await finished
            if result is None:
                # The claim expires and the delivery is picked up again
                continue
            try:
                await self._store(event, result)
            except Exception as e:
                logger.error(f"Failed to record webhook event {event.id}: {e}", exc_info=True)
        return len(claimed)

    async def _claim(self) -> list[tuple[WebhookEvent, Webhook]]:
        """
        Marks due deliveries SENDING. Pending/retrying rows are due at
        next_retry_at; a SENDING row whose claim ran out is due again.
        Rows whose webhook is gone or inactive are failed here without a request.
        """
        now = utcnow()
        claimed = []
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(WebhookEvent, Webhook)
                    .outerjoin(Webhook, Webhook.id == WebhookEvent.webhook_id)
                    .where(
                        WebhookEvent.status.in_(DUE_STATUSES),
                        WebhookEvent.next_retry_at <= now,
                    )
                    .order_by(WebhookEvent.next_retry_at.asc())
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True, of=WebhookEvent)
                )
                rows = (await session.execute(stmt)).all()

                for event, webhook in rows:
                    if webhook is None or not webhook.is_active:
                        reason = "Webhook deleted" if webhook is None else "Webhook inactive"
                        self._finish(event, WebhookEventStatus.FAILED, error=reason, now=now)
                        WEBHOOK_DELIVERIES.labels(result="failed").inc()
                        continue
                    if event.status == WebhookEventStatus.SENDING:
                        logger.warning(f"Webhook event {event.id} claim expired; sending again")
                    event.status = WebhookEventStatus.SENDING
                    event.next_retry_at = now + timedelta(seconds=webhook.timeout_seconds + CLAIM_GRACE_SECONDS)
                    claimed.append((event, webhook))

        return claimed

    async def _send(
        self, semaphore: asyncio.Semaphore, event: WebhookEvent, webhook: Webhook
    ) -> tuple[WebhookEvent, Optional[DeliveryResult]]:
        async with semaphore:
            try:
                result = await deliver(
                    webhook,
                    event.event_type,
                    event.event_data,
                    delivery_id=str(event.id),
                    transport=self.transport,
                )
            except Exception as e:
                logger.error(f"Failed to send webhook event {event.id}: {e}", exc_info=True)
                result = None
        return event, result

    async def _store(self, claimed: WebhookEvent, result: DeliveryResult) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                event = await session.get(WebhookEvent, claimed.id, with_for_update=True)
                if (
                    event is None
                    or event.status != WebhookEventStatus.SENDING
                    or event.attempt_number != claimed.attempt_number
                ):
                    logger.warning(f"Webhook event {claimed.id} changed while sending; result dropped")
                    return

                webhook = await session.get(Webhook, event.webhook_id)
                if webhook is None:
                    self._finish(event, WebhookEventStatus.FAILED, error="Webhook deleted")
                    WEBHOOK_DELIVERIES.labels(result="failed").inc()
                    return

                await self._record(session, webhook, event, result)

    async def _record(self, session: AsyncSession, webhook: Webhook, event: WebhookEvent, result: DeliveryResult) -> None:
        now = utcnow()

        event.http_status_code = result.status_code
        event.response_body = result.response_body
        event.duration_ms = result.duration_ms
        event.request_headers = result.request_headers
        event.request_body = result.request_body

        counters = {
            "total_requests": Webhook.total_requests + 1,
            "last_triggered": now,
        }

        if result.success:
            self._finish(event, WebhookEventStatus.SUCCESS, now=now)
            counters["successful_requests"] = Webhook.successful_requests + 1
            outcome = "success"
        elif result.retryable and event.attempt_number < webhook.retry_attempts:
            delay = compute_backoff(
                event.attempt_number,
                webhook.retry_delay_seconds,
                settings.WEBHOOK_RETRY_MAX_DELAY_SECONDS,
                jitter=False,
            )
            event.status = WebhookEventStatus.RETRYING
            event.error_message = result.error
            event.attempt_number += 1
            event.next_retry_at = now + timedelta(seconds=delay)
            counters["failed_requests"] = Webhook.failed_requests + 1
            outcome = "retrying"
            logger.info(
                f"Webhook event {event.id} will retry (attempt {event.attempt_number}/{webhook.retry_attempts}) "
                f"at {event.next_retry_at.isoformat()}"
            )
        else:
            self._finish(event, WebhookEventStatus.FAILED, error=result.error, now=now)
            counters["failed_requests"] = Webhook.failed_requests + 1
            outcome = "failed"

        await session.execute(
            update(Webhook)
            .where(Webhook.id == webhook.id)
            .values(**counters)
            .execution_options(synchronize_session=False)
        )
        WEBHOOK_DELIVERIES.labels(result=outcome).inc()

    @staticmethod
    def _finish(event: WebhookEvent, status: WebhookEventStatus, error: Optional[str] = None, now=None) -> None:
        event.status = status
        event.error_message = error
        event.completed_at = now or utcnow()
        event.next_retry_at = None
