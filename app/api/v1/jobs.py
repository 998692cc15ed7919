from dataclasses import asdict
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import DbSession, Pagination
from app.api.responses import Envelope, UtcDatetime, ok
from app.auth.security import AdminPrincipal, CurrentPrincipal, Principal
from app.commands.cleanup import cleanup_old_jobs
from app.commands.enqueue import enqueue_batch, enqueue_job
from app.commands.manage import (
    cancel_job,
    get_job,
    list_dependencies,
    list_executions,
    list_job_events,
    list_jobs,
    retry_job,
)
from app.commands.stats import get_queue_stats
from app.commands.workers import list_workers
from app.domain.errors import ValidationError
from app.domain.states import JobPriority

router = APIRouter()

MAX_BATCH_SIZE = 1000

class JobCreate(BaseModel):
    job_type: Optional[str] = None
    payload: Any = None
    queue: Optional[str] = None
    priority: str = JobPriority.NORMAL
    delay: int = Field(0, ge=0)
    max_attempts: Optional[int] = None
    timeout: Optional[int] = None
    depends_on: list[UUID] = Field(default_factory=list)
    parent_job_id: Optional[UUID] = None
    context: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[UtcDatetime] = None
    job_name: Optional[str] = None
    # Honoured for admin callers only
    agency_id: Optional[str] = None

class JobBatchCreate(BaseModel):
    jobs: list[JobCreate]

class JobAction(BaseModel):
    action: str

class JobResponse(BaseModel):
    id: UUID
    queue_name: str
    job_type: str
    job_name: Optional[str] = None
    payload: Any = None
    context: Optional[dict[str, Any]] = None
    priority: str
    status: str
    max_attempts: int
    attempt_count: int
    timeout_seconds: int
    scheduled_at: UtcDatetime
    delay_seconds: int = 0
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    failed_at: Optional[UtcDatetime] = None
    result: Any = None
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    worker_id: Optional[str] = None
    worker_hostname: Optional[str] = None
    parent_job_id: Optional[UUID] = None
    recurring_job_id: Optional[UUID] = None
    depends_on: list[UUID] = Field(default_factory=list)
    progress_current: int = 0
    progress_total: int = 100
    progress_message: Optional[str] = None
    created_by: Optional[str] = None
    agency_id: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    model_config = ConfigDict(from_attributes=True)

class ExecutionResponse(BaseModel):
    id: UUID
    job_id: UUID
    attempt_number: int
    worker_id: Optional[str] = None
    worker_hostname: Optional[str] = None
    started_at: UtcDatetime
    completed_at: Optional[UtcDatetime] = None
    duration_ms: Optional[int] = None
    status: str
    result: Any = None
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    model_config = ConfigDict(from_attributes=True)

class JobEventResponse(BaseModel):
    id: int
    job_id: UUID
    event_type: str
    timestamp: UtcDatetime
    meta: Optional[dict[str, Any]] = None
    model_config = ConfigDict(from_attributes=True)

class WorkerResponse(BaseModel):
    worker_id: str
    hostname: str
    process_id: Optional[int] = None
    queues: list[str]
    max_concurrent_jobs: int
    status: str
    is_healthy: bool
    jobs_processed: int
    jobs_failed: int
    total_processing_time_ms: int
    started_at: UtcDatetime
    last_heartbeat: UtcDatetime
    last_job_at: Optional[UtcDatetime] = None
    version: Optional[str] = None
    environment: str
    model_config = ConfigDict(from_attributes=True)

def _enqueue_kwargs(body: JobCreate, principal: Principal) -> dict[str, Any]:
    return {
        "job_type": body.job_type,
        "payload": body.payload,
        "queue": body.queue,
        "priority": body.priority,
        "delay": body.delay,
        "max_attempts": body.max_attempts,
        "timeout": body.timeout,
        "depends_on": body.depends_on,
        "parent_job_id": body.parent_job_id,
        "context": body.context,
        "scheduled_at": body.scheduled_at,
        "job_name": body.job_name,
        "agency_id": body.agency_id if principal.is_admin else principal.agency_id,
        "created_by": "admin" if principal.is_admin else principal.agency_id,
    }

# ---- Collection & dashboard routes (declared before /{job_id}) ----

@router.get("", response_model=Envelope[list[JobResponse]])
async def get_jobs(
    session: DbSession,
    principal: CurrentPrincipal,
    page: Pagination,
    queue: Optional[str] = None,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    agency_id: Optional[str] = None,
):
    jobs = await list_jobs(
        session,
        queue=queue,
        status=status,
        job_type=job_type,
        agency_id=principal.scope(agency_id),
        limit=page.limit,
        offset=page.offset,
    )
    return ok(jobs)

@router.post("", response_model=Envelope[JobResponse], status_code=status.HTTP_201_CREATED)
async def create_job(body: JobCreate, session: DbSession, principal: CurrentPrincipal):
    kwargs = _enqueue_kwargs(body, principal)
    job = await enqueue_job(session, kwargs.pop("job_type"), kwargs.pop("payload"), **kwargs)
    await session.commit()

    data = JobResponse.model_validate(job)
    data.depends_on = list(body.depends_on)
    return ok(data, "Job created")

@router.post("/batch", response_model=Envelope[list[JobResponse]], status_code=status.HTTP_201_CREATED)
async def create_jobs_batch(body: JobBatchCreate, session: DbSession, principal: CurrentPrincipal):
    if not body.jobs:
        raise ValidationError("jobs cannot be empty")
    if len(body.jobs) > MAX_BATCH_SIZE:
        raise ValidationError(f"At most {MAX_BATCH_SIZE} jobs per batch")

    jobs = await enqueue_batch(session, [_enqueue_kwargs(spec, principal) for spec in body.jobs])
    await session.commit()
    return ok(jobs, f"{len(jobs)} jobs created")

@router.get("/workers", response_model=Envelope[list[WorkerResponse]])
async def get_workers(
    session: DbSession,
    _: AdminPrincipal,
    status: Optional[str] = None,
    environment: Optional[str] = None,
):
    workers = await list_workers(session, status=status, environment=environment)
    return ok(workers)

@router.get("/stats")
async def get_stats(session: DbSession, _: CurrentPrincipal, queue: Optional[str] = None):
    stats = await get_queue_stats(session, queue)
    return ok([asdict(s) for s in stats])

@router.post("/cleanup")
async def run_cleanup(session: DbSession, _: AdminPrincipal):
    deleted = await cleanup_old_jobs(session)
    await session.commit()
    return ok({"deleted_jobs": deleted}, f"Cleanup removed {deleted} jobs")

# ---- Single job ----

@router.get("/{job_id}", response_model=Envelope[JobResponse])
async def get_job_detail(job_id: UUID, session: DbSession, principal: CurrentPrincipal):
    job = await get_job(session, job_id, principal.scope())
    data = JobResponse.model_validate(job)
    data.depends_on = await list_dependencies(session, job_id)
    return ok(data)

@router.put("/{job_id}", response_model=Envelope[JobResponse])
async def update_job(job_id: UUID, body: JobAction, session: DbSession, principal: CurrentPrincipal):
    if body.action == "cancel":
        job = await cancel_job(session, job_id, principal.scope())
        message = "Job cancelled"
    elif body.action == "retry":
        job = await retry_job(session, job_id, principal.scope())
        message = "Job re-queued"
    else:
        raise ValidationError(f"Invalid action: {body.action}")

    await session.commit()
    return ok(job, message)

@router.delete("/{job_id}", response_model=Envelope[JobResponse])
async def delete_job(job_id: UUID, session: DbSession, principal: CurrentPrincipal):
    # Jobs are cancelled, not removed; history stays for audit
    job = await cancel_job(session, job_id, principal.scope())
    await session.commit()
    return ok(job, "Job cancelled")

@router.get("/{job_id}/executions", response_model=Envelope[list[ExecutionResponse]])
async def get_job_executions(job_id: UUID, session: DbSession, principal: CurrentPrincipal):
    await get_job(session, job_id, principal.scope())
    return ok(await list_executions(session, job_id))

@router.get("/{job_id}/events", response_model=Envelope[list[JobEventResponse]])
async def get_job_events(job_id: UUID, session: DbSession, principal: CurrentPrincipal):
    await get_job(session, job_id, principal.scope())
    return ok(await list_job_events(session, job_id))
