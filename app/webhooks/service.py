import logging
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Webhook, WebhookEvent, WebhookEventType
from app.domain.errors import (
    InvalidJobStateError,
    ValidationError,
    WebhookEventNotFoundError,
    WebhookNotFoundError,
)
from app.domain.filters import matches_filters
from app.domain.states import HttpMethod, WebhookEventStatus
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

WILDCARD = "*"
MAX_EVENTS_PAGE = 500

_UPDATABLE_FIELDS = (
    "name",
    "description",
    "url",
    "method",
    "headers",
    "secret_token",
    "events",
    "is_active",
    "retry_attempts",
    "retry_delay_seconds",
    "timeout_seconds",
    "filters",
)

def _validate(values: dict[str, Any]) -> None:
    if "name" in values and not values["name"]:
        raise ValidationError("name is required")

    url = values.get("url")
    if url is not None and not str(url).startswith(("http://", "https://")):
        raise ValidationError("url must be an http(s) URL")

    method = values.get("method")
    if method is not None and method not in {m.value for m in HttpMethod}:
        raise ValidationError(f"Invalid method: {method}")

    events = values.get("events")
    if events is not None and (not isinstance(events, list) or not events):
        raise ValidationError("events must be a non-empty list")

    for field in ("headers", "filters"):
        if values.get(field) is not None and not isinstance(values[field], dict):
            raise ValidationError(f"{field} must be an object")

    if values.get("retry_attempts") is not None and values["retry_attempts"] < 1:
        raise ValidationError("retry_attempts must be at least 1")
    if values.get("retry_delay_seconds") is not None and values["retry_delay_seconds"] < 0:
        raise ValidationError("retry_delay_seconds cannot be negative")
    if values.get("timeout_seconds") is not None and values["timeout_seconds"] < 1:
        raise ValidationError("timeout_seconds must be at least 1")

# ---- Webhooks ----

async def create_webhook(
    session: AsyncSession,
    name: str,
    url: str,
    events: list[str],
    *,
    agency_id: Optional[str] = None,
    description: Optional[str] = None,
    method: str = HttpMethod.POST,
    headers: Optional[dict[str, str]] = None,
    secret_token: Optional[str] = None,
    is_active: bool = True,
    retry_attempts: int = 3,
    retry_delay_seconds: int = 60,
    timeout_seconds: int = 30,
    filters: Optional[dict[str, Any]] = None,
    created_by: Optional[str] = None,
) -> Webhook:
    if not name or not url or not events:
        raise ValidationError("name, url and events are required")
    _validate({
        "url": url,
        "method": method,
        "events": events,
        "headers": headers,
        "filters": filters,
        "retry_attempts": retry_attempts,
        "retry_delay_seconds": retry_delay_seconds,
        "timeout_seconds": timeout_seconds,
    })

    now = utcnow()
    webhook = Webhook(
        agency_id=agency_id,
        name=name,
        description=description,
        url=url,
        method=HttpMethod(method),
        headers=headers or {},
        secret_token=secret_token,
        events=list(events),
        is_active=is_active,
        retry_attempts=retry_attempts,
        retry_delay_seconds=retry_delay_seconds,
        timeout_seconds=timeout_seconds,
        filters=filters or {},
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(webhook)
    await session.flush()
    logger.info(f"Webhook {webhook.id} ({name}) created for events {events}")
    return webhook

async def get_webhook(session: AsyncSession, webhook_id: UUID, agency_id: Optional[str] = None) -> Webhook:
    webhook = await session.get(Webhook, webhook_id)
    if webhook is None or (agency_id is not None and webhook.agency_id != agency_id):
        raise WebhookNotFoundError(webhook_id)
    return webhook

async def list_webhooks(
    session: AsyncSession,
    agency_id: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> list[Webhook]:
    stmt = select(Webhook).order_by(Webhook.created_at.desc())
    if agency_id:
        stmt = stmt.where(Webhook.agency_id == agency_id)
    if is_active is not None:
        stmt = stmt.where(Webhook.is_active.is_(is_active))
    return list((await session.scalars(stmt)).all())

async def update_webhook(
    session: AsyncSession,
    webhook_id: UUID,
    updates: dict[str, Any],
    agency_id: Optional[str] = None,
) -> Webhook:
    webhook = await get_webhook(session, webhook_id, agency_id)

    updates = {k: v for k, v in updates.items() if k in _UPDATABLE_FIELDS}
    _validate(updates)

    for field, value in updates.items():
        setattr(webhook, field, value)
    webhook.updated_at = utcnow()

    await session.flush()
    return webhook

async def delete_webhook(session: AsyncSession, webhook_id: UUID, agency_id: Optional[str] = None) -> None:
    """Deletes the webhook together with its delivery history."""
    webhook = await get_webhook(session, webhook_id, agency_id)
    await session.execute(delete(WebhookEvent).where(WebhookEvent.webhook_id == webhook.id))
    await session.delete(webhook)
    await session.flush()
    logger.info(f"Webhook {webhook_id} deleted")

# ---- Event catalog ----

async def list_event_types(session: AsyncSession, category: Optional[str] = None) -> list[WebhookEventType]:
    stmt = (
        select(WebhookEventType)
        .where(WebhookEventType.is_active.is_(True))
        .order_by(WebhookEventType.category, WebhookEventType.name)
    )
    if category:
        stmt = stmt.where(WebhookEventType.category == category)
    return list((await session.scalars(stmt)).all())

# ---- Deliveries ----

def is_subscribed(webhook: Webhook, event_type: str) -> bool:
    events = webhook.events or []
    return WILDCARD in events or event_type in events

async def trigger_event(
    session: AsyncSession,
    event_type: str,
    event_data: Any,
    agency_id: Optional[str] = None,
) -> list[WebhookEvent]:
    """
    Fans an event out to every active subscribed webhook whose filters match.
    Creates one pending delivery per webhook; the delivery processor sends them.
    """
    if not event_type:
        raise ValidationError("event_type is required")

    stmt = select(Webhook).where(Webhook.is_active.is_(True))
    if agency_id:
        stmt = stmt.where(Webhook.agency_id == agency_id)
    webhooks = (await session.scalars(stmt)).all()

    now = utcnow()
    created = []
    for webhook in webhooks:
        if not is_subscribed(webhook, event_type):
            continue
        if not matches_filters(event_data, webhook.filters):
            logger.debug(f"Event {event_type} filtered out for webhook {webhook.id}")
            continue
        delivery = WebhookEvent(
            webhook_id=webhook.id,
            event_type=event_type,
            event_data=event_data,
            status=WebhookEventStatus.PENDING,
            attempt_number=1,
            triggered_at=now,
            next_retry_at=now,
        )
        session.add(delivery)
        created.append(delivery)

    if created:
        await session.flush()
        logger.info(f"Event {event_type} queued for {len(created)} webhooks")
    else:
        logger.debug(f"No webhook subscribed to {event_type}")
    return created

async def get_event(session: AsyncSession, event_id: UUID, agency_id: Optional[str] = None) -> WebhookEvent:
    event = await session.get(WebhookEvent, event_id)
    if event is None:
        raise WebhookEventNotFoundError(event_id)
    if agency_id is not None:
        owner = await session.scalar(select(Webhook.agency_id).where(Webhook.id == event.webhook_id))
        if owner != agency_id:
            raise WebhookEventNotFoundError(event_id)
    return event

async def list_events(
    session: AsyncSession,
    webhook_id: Optional[UUID] = None,
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    agency_id: Optional[str] = None,
) -> list[WebhookEvent]:
    stmt = select(WebhookEvent).order_by(WebhookEvent.triggered_at.desc())
    if webhook_id:
        stmt = stmt.where(WebhookEvent.webhook_id == webhook_id)
    if event_type:
        stmt = stmt.where(WebhookEvent.event_type == event_type)
    if status:
        stmt = stmt.where(WebhookEvent.status == status)
    if agency_id:
        stmt = stmt.where(WebhookEvent.webhook_id.in_(select(Webhook.id).where(Webhook.agency_id == agency_id)))

    stmt = stmt.limit(max(1, min(limit, MAX_EVENTS_PAGE)))
    return list((await session.scalars(stmt)).all())

async def retry_event(session: AsyncSession, event_id: UUID, agency_id: Optional[str] = None) -> WebhookEvent:
    """Schedules another attempt right away, whatever the previous outcome."""
    event = await get_event(session, event_id, agency_id)

    if event.status == WebhookEventStatus.SENDING:
        raise InvalidJobStateError(event.status, WebhookEventStatus.RETRYING)

    now = utcnow()
    event.status = WebhookEventStatus.RETRYING
    event.attempt_number += 1
    event.next_retry_at = now
    event.completed_at = None
    event.error_message = None

    await session.flush()
    logger.info(f"Webhook event {event_id} re-queued manually (attempt {event.attempt_number})")
    return event

async def get_webhook_stats(
    session: AsyncSession,
    webhook_id: Optional[UUID] = None,
    agency_id: Optional[str] = None,
) -> dict[str, Any]:
    webhook_stmt = select(
        func.count(),
        func.sum(case((Webhook.is_active.is_(True), 1), else_=0)),
    ).select_from(Webhook)
    if agency_id:
        webhook_stmt = webhook_stmt.where(Webhook.agency_id == agency_id)
    if webhook_id:
        webhook_stmt = webhook_stmt.where(Webhook.id == webhook_id)
    total_webhooks, active_webhooks = (await session.execute(webhook_stmt)).one()

    event_stmt = select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)
    recent_stmt = select(func.count()).select_from(WebhookEvent).where(
        WebhookEvent.triggered_at > utcnow() - timedelta(hours=24)
    )
    if webhook_id:
        event_stmt = event_stmt.where(WebhookEvent.webhook_id == webhook_id)
        recent_stmt = recent_stmt.where(WebhookEvent.webhook_id == webhook_id)
    if agency_id:
        owned = select(Webhook.id).where(Webhook.agency_id == agency_id)
        event_stmt = event_stmt.where(WebhookEvent.webhook_id.in_(owned))
        recent_stmt = recent_stmt.where(WebhookEvent.webhook_id.in_(owned))

    by_status = {status: count for status, count in (await session.execute(event_stmt)).all()}
    total_events = sum(by_status.values())
    successful = by_status.get(WebhookEventStatus.SUCCESS, 0)
    failed = by_status.get(WebhookEventStatus.FAILED, 0)
    success_rate = (successful / total_events) * 100 if total_events else 0.0

    return {
        "total_webhooks": total_webhooks,
        "active_webhooks": int(active_webhooks or 0),
        "total_events": total_events,
        "successful_events": successful,
        "failed_events": failed,
        "success_rate": round(success_rate, 2),
        "events_last_24h": await session.scalar(recent_stmt) or 0,
    }
