import secrets
from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from app.api.deps import DbSession
from app.api.responses import Envelope, UtcDatetime, ok
from app.auth.security import AdminPrincipal
from app.commands.requeue_expired import fail_timed_out_jobs, requeue_expired_jobs
from app.db.models import Agency
from app.domain.errors import ConflictError

router = APIRouter()

class AgencyCreate(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    # Generated when omitted
    api_key: Optional[str] = None

class AgencyResponse(BaseModel):
    id: str
    name: str
    api_key: Optional[str] = None
    created_at: UtcDatetime
    model_config = ConfigDict(from_attributes=True)

@router.post("/requeue_expired")
async def trigger_requeue_expired(session: DbSession, _: AdminPrincipal):
    requeued = await requeue_expired_jobs(session)
    timed_out = await fail_timed_out_jobs(session)
    await session.commit()
    return ok({"requeued_count": requeued, "timed_out_count": timed_out})

@router.post("/agencies", response_model=Envelope[AgencyResponse], status_code=status.HTTP_201_CREATED)
async def create_agency(payload: AgencyCreate, session: DbSession, _: AdminPrincipal):
    if await session.get(Agency, payload.id):
        raise ConflictError(f"Agency {payload.id} already exists")
    if payload.api_key and await session.scalar(select(Agency).where(Agency.api_key == payload.api_key)):
        raise ConflictError("API key already in use")

    agency = Agency(
        id=payload.id,
        name=payload.name,
        api_key=payload.api_key or f"ak_{secrets.token_urlsafe(24)}",
    )
    session.add(agency)
    await session.commit()
    return ok(agency, "Agency created")
