from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import DbSession
from app.api.responses import Envelope, UtcDatetime, ok
from app.auth.security import CurrentPrincipal
from app.commands.recurring import (
    create_recurring_job,
    delete_recurring_job,
    list_recurring_jobs,
    update_recurring_job,
)
from app.domain.states import JobPriority

router = APIRouter()

class RecurringJobCreate(BaseModel):
    name: str = Field(min_length=1)
    job_type: str = Field(min_length=1)
    cron_expression: str
    queue_name: Optional[str] = None
    payload: Any = None
    context: dict[str, Any] = Field(default_factory=dict)
    priority: str = JobPriority.NORMAL
    timezone: str = "UTC"
    description: Optional[str] = None
    is_active: bool = True
    max_attempts: int = 3
    timeout_seconds: int = 300
    agency_id: Optional[str] = None

class RecurringJobUpdate(BaseModel):
    description: Optional[str] = None
    queue_name: Optional[str] = None
    job_type: Optional[str] = None
    payload: Any = None
    context: Optional[dict[str, Any]] = None
    priority: Optional[str] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    is_active: Optional[bool] = None
    max_attempts: Optional[int] = None
    timeout_seconds: Optional[int] = None

class RecurringJobResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    queue_name: str
    job_type: str
    payload: Any = None
    context: Optional[dict[str, Any]] = None
    priority: str
    cron_expression: str
    timezone: str
    is_active: bool
    max_attempts: int
    timeout_seconds: int
    last_run_at: Optional[UtcDatetime] = None
    next_run_at: Optional[UtcDatetime] = None
    last_job_id: Optional[UUID] = None
    total_runs: int
    successful_runs: int
    failed_runs: int
    created_by: Optional[str] = None
    agency_id: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    model_config = ConfigDict(from_attributes=True)

@router.get("", response_model=Envelope[list[RecurringJobResponse]])
async def get_recurring_jobs(
    session: DbSession,
    principal: CurrentPrincipal,
    is_active: Optional[bool] = None,
    agency_id: Optional[str] = None,
):
    return ok(await list_recurring_jobs(session, principal.scope(agency_id), is_active))

@router.post("", response_model=Envelope[RecurringJobResponse], status_code=status.HTTP_201_CREATED)
async def post_recurring_job(body: RecurringJobCreate, session: DbSession, principal: CurrentPrincipal):
    recurring = await create_recurring_job(
        session,
        body.name,
        body.job_type,
        body.cron_expression,
        queue_name=body.queue_name,
        payload=body.payload,
        context=body.context,
        priority=body.priority,
        tz_name=body.timezone,
        description=body.description,
        is_active=body.is_active,
        max_attempts=body.max_attempts,
        timeout_seconds=body.timeout_seconds,
        created_by="admin" if principal.is_admin else principal.agency_id,
        agency_id=body.agency_id if principal.is_admin else principal.agency_id,
    )
    await session.commit()
    return ok(recurring, f"Recurring job {recurring.name} created")

@router.put("/{recurring_id}", response_model=Envelope[RecurringJobResponse])
async def put_recurring_job(
    recurring_id: UUID,
    body: RecurringJobUpdate,
    session: DbSession,
    principal: CurrentPrincipal,
):
    recurring = await update_recurring_job(
        session, recurring_id, body.model_dump(exclude_none=True), principal.scope()
    )
    await session.commit()
    return ok(recurring, "Recurring job updated")

@router.delete("/{recurring_id}", response_model=Envelope[None])
async def remove_recurring_job(recurring_id: UUID, session: DbSession, principal: CurrentPrincipal):
    await delete_recurring_job(session, recurring_id, principal.scope())
    await session.commit()
    return ok(None, "Recurring job deleted")
