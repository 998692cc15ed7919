import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import WebhookEventType

logger = logging.getLogger(__name__)

TEST_EVENT = "webhook.test"

# (name, category, description)
SYSTEM_EVENT_TYPES = [
    ("job.completed", "jobs", "A background job finished successfully"),
    ("job.failed", "jobs", "A background job failed and will not be retried"),
    ("job.dead_lettered", "jobs", "A background job was moved to its dead letter queue"),
    ("webhook.test", "webhooks", "Test delivery sent from the dashboard"),
    ("agency.created", "agencies", "A new agency was created"),
    ("agency.updated", "agencies", "Agency details changed"),
    ("client.created", "clients", "A client was added to the agency"),
    ("client.updated", "clients", "Client details changed"),
    ("client.deleted", "clients", "A client was removed"),
    ("task.created", "tasks", "A task was created"),
    ("task.updated", "tasks", "A task changed"),
    ("task.completed", "tasks", "A task was marked done"),
    ("invoice.created", "finance", "An invoice was issued"),
    ("invoice.paid", "finance", "An invoice was paid"),
    ("invoice.overdue", "finance", "An invoice passed its due date"),
    ("message.received", "messages", "An inbound message arrived"),
    ("message.sent", "messages", "An outbound message was sent"),
]

async def seed_event_types(session: AsyncSession) -> int:
    """Inserts missing catalog entries; existing rows are left untouched."""
    existing = set((await session.scalars(select(WebhookEventType.name))).all())

    added = 0
    for name, category, description in SYSTEM_EVENT_TYPES:
        if name in existing:
            continue
        session.add(WebhookEventType(name=name, category=category, description=description))
        added += 1

    if added:
        await session.flush()
        logger.info(f"Seeded {added} webhook event types")
    return added
