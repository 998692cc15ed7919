from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select

from app.api.deps import DbSession
from app.api.responses import Envelope, UtcDatetime, ok
from app.api.v1.jobs import JobResponse, WorkerResponse
from app.auth.security import WorkerSignatureVerifier
from app.commands.complete_job import complete_job
from app.commands.fail_job import fail_job
from app.commands.heartbeat import heartbeat
from app.commands.lease_job import lease_job
from app.commands.workers import register_worker, stop_worker, worker_heartbeat
from app.db.models import JobWorker
from app.settings import settings

router = APIRouter(dependencies=[Depends(WorkerSignatureVerifier())])

class RegisterRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    hostname: str
    queues: list[str] = Field(min_length=1)
    process_id: Optional[int] = None
    max_concurrent_jobs: int = 5
    version: Optional[str] = None
    environment: str = "development"

class WorkerHeartbeatRequest(BaseModel):
    active_jobs: int = 0

class StopRequest(BaseModel):
    graceful: bool = False

class PollRequest(BaseModel):
    worker_id: str
    # Falls back to the queues the worker registered with
    queues: Optional[list[str]] = None
    hostname: Optional[str] = None
    lease_duration_seconds: Optional[int] = Field(None, ge=1)

class PollResponse(BaseModel):
    job: JobResponse
    lease_token: UUID
    expires_at: UtcDatetime

class HeartbeatRequest(BaseModel):
    lease_token: UUID
    extend_seconds: int = Field(60, ge=1)
    progress_current: Optional[int] = None
    progress_total: Optional[int] = None
    progress_message: Optional[str] = None

class HeartbeatResponse(BaseModel):
    expires_at: UtcDatetime

class CompleteRequest(BaseModel):
    lease_token: UUID
    result: Any = None

class FailRequest(BaseModel):
    lease_token: UUID
    error: str
    error_details: Optional[dict[str, Any]] = None
    retryable: bool = True

class AckResponse(BaseModel):
    job_id: UUID
    status: str

@router.post("/register", response_model=Envelope[WorkerResponse])
async def register(body: RegisterRequest, session: DbSession):
    worker = await register_worker(session, **body.model_dump())
    await session.commit()
    return ok(worker, "Worker registered")

@router.post("/{worker_id}/heartbeat", response_model=Envelope[WorkerResponse])
async def heartbeat_worker(worker_id: str, body: WorkerHeartbeatRequest, session: DbSession):
    worker = await worker_heartbeat(session, worker_id, body.active_jobs)
    await session.commit()
    return ok(worker)

@router.post("/{worker_id}/stop", response_model=Envelope[WorkerResponse])
async def stop(worker_id: str, body: StopRequest, session: DbSession):
    worker = await stop_worker(session, worker_id, graceful=body.graceful)
    await session.commit()
    return ok(worker, f"Worker {worker.status}")

@router.post("/poll", response_model=Envelope[PollResponse])
async def poll_job(body: PollRequest, session: DbSession):
    queues = body.queues
    if not queues:
        registered = await session.scalar(select(JobWorker.queues).where(JobWorker.worker_id == body.worker_id))
        queues = registered or [settings.DEFAULT_QUEUE_NAME]

    result = await lease_job(
        session,
        worker_id=body.worker_id,
        queues=queues,
        hostname=body.hostname,
        lease_duration=body.lease_duration_seconds,
    )
    if not result:
        # Admission checks may have opened a transaction
        await session.rollback()
        return ok(None, "No job available")

    job, lease = result
    await session.commit()

    return ok(PollResponse(
        job=JobResponse.model_validate(job),
        lease_token=lease.lease_token,
        expires_at=lease.expires_at,
    ))

@router.post("/jobs/{job_id}/heartbeat", response_model=Envelope[HeartbeatResponse])
async def job_heartbeat(job_id: UUID, body: HeartbeatRequest, session: DbSession):
    new_expires_at = await heartbeat(
        session,
        job_id=job_id,
        lease_token=body.lease_token,
        extend_seconds=body.extend_seconds,
        progress_current=body.progress_current,
        progress_total=body.progress_total,
        progress_message=body.progress_message,
    )
    await session.commit()
    return ok({"expires_at": new_expires_at})

@router.post("/jobs/{job_id}/complete", response_model=Envelope[AckResponse])
async def job_complete(job_id: UUID, body: CompleteRequest, session: DbSession):
    job = await complete_job(
        session,
        job_id=job_id,
        result_data=body.result,
        lease_token=body.lease_token,
    )
    await session.commit()
    return ok({"job_id": job.id, "status": job.status}, "Job completed")

@router.post("/jobs/{job_id}/fail", response_model=Envelope[AckResponse])
async def job_fail(job_id: UUID, body: FailRequest, session: DbSession):
    job = await fail_job(
        session,
        job_id=job_id,
        error=body.error,
        lease_token=body.lease_token,
        error_details=body.error_details,
        retryable=body.retryable,
    )
    await session.commit()
    # RETRYING (with backoff) or FAILED (possibly dead-lettered)
    return ok({"job_id": job.id, "status": job.status}, f"Job {job.status}")
