from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import DbSession
from app.api.responses import Envelope, UtcDatetime, ok
from app.auth.security import CurrentPrincipal
from app.domain.states import HttpMethod
from app.webhooks import service
from app.webhooks.sender import send_test

router = APIRouter()

class WebhookCreate(BaseModel):
    name: str
    url: str
    events: list[str]
    description: Optional[str] = None
    method: str = HttpMethod.POST
    headers: dict[str, str] = Field(default_factory=dict)
    secret_token: Optional[str] = None
    is_active: bool = True
    retry_attempts: int = 3
    retry_delay_seconds: int = 60
    timeout_seconds: int = 30
    filters: dict[str, Any] = Field(default_factory=dict)
    # Honoured for admin callers only
    agency_id: Optional[str] = None

class WebhookUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    secret_token: Optional[str] = None
    events: Optional[list[str]] = None
    is_active: Optional[bool] = None
    retry_attempts: Optional[int] = None
    retry_delay_seconds: Optional[int] = None
    timeout_seconds: Optional[int] = None
    filters: Optional[dict[str, Any]] = None

class WebhookResponse(BaseModel):
    id: UUID
    agency_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    url: str
    method: str
    headers: dict[str, str]
    has_secret: bool = False
    events: list[str]
    is_active: bool
    retry_attempts: int
    retry_delay_seconds: int
    timeout_seconds: int
    filters: dict[str, Any]
    total_requests: int
    successful_requests: int
    failed_requests: int
    last_triggered: Optional[UtcDatetime] = None
    created_by: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def of(cls, webhook) -> "WebhookResponse":
        # The secret itself is never echoed back
        data = cls.model_validate(webhook)
        data.has_secret = bool(webhook.secret_token)
        return data

class WebhookEventResponse(BaseModel):
    id: UUID
    webhook_id: UUID
    event_type: str
    event_data: Any = None
    status: str
    http_status_code: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    triggered_at: UtcDatetime
    completed_at: Optional[UtcDatetime] = None
    duration_ms: Optional[int] = None
    attempt_number: int
    next_retry_at: Optional[UtcDatetime] = None
    request_headers: Optional[dict[str, str]] = None
    request_body: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class EventTypeResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    category: str
    payload_schema: Optional[dict[str, Any]] = None
    is_active: bool
    model_config = ConfigDict(from_attributes=True)

class TriggerRequest(BaseModel):
    event_type: str = Field(min_length=1)
    event_data: Any = Field(default_factory=dict)
    # Honoured for admin callers only
    agency_id: Optional[str] = None

class TestResult(BaseModel):
    success: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int

class WebhookStats(BaseModel):
    total_webhooks: int
    active_webhooks: int
    total_events: int
    successful_events: int
    failed_events: int
    success_rate: float
    events_last_24h: int

# ---- Static paths first; /{webhook_id} would swallow them ----

@router.get("/events", response_model=Envelope[list[WebhookEventResponse]])
async def get_events(
    session: DbSession,
    principal: CurrentPrincipal,
    webhook_id: Optional[UUID] = None,
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
):
    events = await service.list_events(
        session,
        webhook_id=webhook_id,
        event_type=event_type,
        status=status,
        limit=limit,
        agency_id=principal.scope(),
    )
    return ok(events)

@router.post("/events", response_model=Envelope[list[WebhookEventResponse]], status_code=status.HTTP_202_ACCEPTED)
async def trigger(body: TriggerRequest, session: DbSession, principal: CurrentPrincipal):
    agency_id = body.agency_id if principal.is_admin else principal.agency_id
    events = await service.trigger_event(session, body.event_type, body.event_data, agency_id)
    await session.commit()
    return ok(events, f"Event queued for {len(events)} webhooks")

@router.post("/events/{event_id}/retry", response_model=Envelope[WebhookEventResponse])
async def retry(event_id: UUID, session: DbSession, principal: CurrentPrincipal):
    event = await service.retry_event(session, event_id, principal.scope())
    await session.commit()
    return ok(event, "Delivery re-queued")

@router.get("/event-types", response_model=Envelope[list[EventTypeResponse]])
async def get_event_types(session: DbSession, _: CurrentPrincipal, category: Optional[str] = None):
    return ok(await service.list_event_types(session, category))

@router.get("/stats", response_model=Envelope[WebhookStats])
async def get_stats(
    session: DbSession,
    principal: CurrentPrincipal,
    webhook_id: Optional[UUID] = None,
    agency_id: Optional[str] = None,
):
    stats = await service.get_webhook_stats(session, webhook_id, principal.scope(agency_id))
    return ok(stats)

# ---- Webhooks ----

@router.get("", response_model=Envelope[list[WebhookResponse]])
async def get_webhooks(
    session: DbSession,
    principal: CurrentPrincipal,
    is_active: Optional[bool] = None,
    agency_id: Optional[str] = None,
):
    webhooks = await service.list_webhooks(session, principal.scope(agency_id), is_active)
    return ok([WebhookResponse.of(w) for w in webhooks])

@router.post("", response_model=Envelope[WebhookResponse], status_code=status.HTTP_201_CREATED)
async def post_webhook(body: WebhookCreate, session: DbSession, principal: CurrentPrincipal):
    values = body.model_dump(exclude={"agency_id"})
    webhook = await service.create_webhook(
        session,
        values.pop("name"),
        values.pop("url"),
        values.pop("events"),
        agency_id=body.agency_id if principal.is_admin else principal.agency_id,
        created_by="admin" if principal.is_admin else principal.agency_id,
        **values,
    )
    await session.commit()
    return ok(WebhookResponse.of(webhook), "Webhook created")

@router.get("/{webhook_id}", response_model=Envelope[WebhookResponse])
async def get_webhook(webhook_id: UUID, session: DbSession, principal: CurrentPrincipal):
    webhook = await service.get_webhook(session, webhook_id, principal.scope())
    return ok(WebhookResponse.of(webhook))

@router.put("/{webhook_id}", response_model=Envelope[WebhookResponse])
async def put_webhook(webhook_id: UUID, body: WebhookUpdate, session: DbSession, principal: CurrentPrincipal):
    webhook = await service.update_webhook(
        session, webhook_id, body.model_dump(exclude_none=True), principal.scope()
    )
    await session.commit()
    return ok(WebhookResponse.of(webhook), "Webhook updated")

@router.delete("/{webhook_id}", response_model=Envelope[None])
async def delete_webhook(webhook_id: UUID, session: DbSession, principal: CurrentPrincipal):
    await service.delete_webhook(session, webhook_id, principal.scope())
    await session.commit()
    return ok(None, "Webhook deleted")

@router.post("/{webhook_id}/test", response_model=Envelope[TestResult])
async def test_webhook(webhook_id: UUID, session: DbSession, principal: CurrentPrincipal):
    webhook = await service.get_webhook(session, webhook_id, principal.scope())
    result = await send_test(webhook)
    data = TestResult(
        success=result.success,
        status_code=result.status_code,
        response_body=result.response_body,
        error=result.error,
        duration_ms=result.duration_ms,
    )
    return ok(data, "Test delivered" if result.success else "Test delivery failed")
