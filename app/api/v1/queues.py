from typing import Optional
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import DbSession
from app.api.responses import Envelope, UtcDatetime, ok
from app.auth.security import AdminPrincipal, CurrentPrincipal
from app.commands.queues import create_queue, list_queues, update_queue

router = APIRouter()

class QueueFields(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    max_workers: Optional[int] = None
    max_jobs_per_worker: Optional[int] = None
    rate_limit_per_minute: Optional[int] = None
    rate_limit_per_hour: Optional[int] = None
    default_max_attempts: Optional[int] = None
    default_timeout_seconds: Optional[int] = None
    retry_delay_base_seconds: Optional[int] = None
    retry_delay_max_seconds: Optional[int] = None
    dead_letter_queue_name: Optional[str] = None
    dead_letter_after_attempts: Optional[int] = None
    allowed_priorities: Optional[list[str]] = None
    retention_completed_hours: Optional[int] = None
    retention_failed_hours: Optional[int] = None

class QueueCreate(QueueFields):
    name: str = Field(min_length=1)

class QueueResponse(BaseModel):
    id: UUID
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    is_active: bool
    max_workers: int
    max_jobs_per_worker: int
    rate_limit_per_minute: int
    rate_limit_per_hour: int
    default_max_attempts: int
    default_timeout_seconds: int
    retry_delay_base_seconds: int
    retry_delay_max_seconds: int
    dead_letter_queue_name: Optional[str] = None
    dead_letter_after_attempts: int
    allowed_priorities: list[str]
    retention_completed_hours: int
    retention_failed_hours: int
    created_at: UtcDatetime
    updated_at: UtcDatetime
    model_config = ConfigDict(from_attributes=True)

@router.get("", response_model=Envelope[list[QueueResponse]])
async def get_queues(session: DbSession, _: CurrentPrincipal):
    return ok(await list_queues(session))

@router.post("", response_model=Envelope[QueueResponse], status_code=status.HTTP_201_CREATED)
async def post_queue(body: QueueCreate, session: DbSession, _: AdminPrincipal):
    values = body.model_dump(exclude={"name"}, exclude_none=True)
    queue = await create_queue(session, body.name, **values)
    await session.commit()
    return ok(queue, f"Queue {queue.name} created")

@router.put("/{name}", response_model=Envelope[QueueResponse])
async def put_queue(name: str, body: QueueFields, session: DbSession, _: AdminPrincipal):
    # Explicit nulls are kept so dead_letter_queue_name can be cleared
    queue = await update_queue(session, name, body.model_dump(exclude_unset=True))
    await session.commit()
    return ok(queue, f"Queue {name} updated")
