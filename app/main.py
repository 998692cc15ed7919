import asyncio
import logging
from contextlib import asynccontextmanager
from secrets import token_urlsafe

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.settings import settings
from app.api.v1.admin import router as admin_router
from app.api.v1.jobs import router as jobs_router
from app.api.v1.metrics import router as metrics_router
from app.api.v1.queues import router as queues_router
from app.api.v1.recurring import router as recurring_router
from app.api.v1.webhooks import router as webhooks_router
from app.api.v1.workers import router as workers_router
from app.db.models import Agency
from app.db.session import AsyncSessionLocal
from app.domain.errors import (
    ConflictError,
    InvalidJobStateError,
    JobError,
    LeaseError,
    NotFoundError,
)
from app.scheduler.service import SchedulerService
from app.services.outbox import OutboxProcessor
from app.webhooks.delivery import WebhookDeliveryProcessor
from app.webhooks.event_types import seed_event_types

logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=settings.log_format)
logger = logging.getLogger(__name__)

DEV_AGENCY_ID = "local-dev"

async def bootstrap() -> None:
    """Seeds the webhook event catalog (and a dev agency when enabled)."""
    async with AsyncSessionLocal() as session:
        await seed_event_types(session)

        if settings.BOOTSTRAP_DEV_AGENCY:
            agency = await session.scalar(select(Agency).where(Agency.id == DEV_AGENCY_ID))
            if not agency:
                agency = Agency(id=DEV_AGENCY_ID, name="Local Dev Agency", api_key=f"dev-key-{token_urlsafe(8)}")
                session.add(agency)
                logger.info(f"BOOTSTRAP: Created '{DEV_AGENCY_ID}' agency. API KEY: {agency.api_key}")
            else:
                logger.info(f"BOOTSTRAP: Found '{DEV_AGENCY_ID}' agency. API KEY: {agency.api_key}")

        await session.commit()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # 1. Bootstrap (retry while migrations have not run yet on a fresh DB)
    for attempt in range(10):
        try:
            await bootstrap()
            break
        except SQLAlchemyError as e:
            logger.warning(f"Bootstrap: database not ready ({e.__class__.__name__}), retrying in 2s... ({attempt + 1}/10)")
            await asyncio.sleep(2)
    else:
        logger.error("Bootstrap gave up; serving without seeded data")

    # 2. Background services
    services = []
    if settings.ENABLE_BACKGROUND_SERVICES:
        services = [SchedulerService(), OutboxProcessor(), WebhookDeliveryProcessor()]
        for service in services:
            await service.start()

    yield

    # Shutdown
    for service in reversed(services):
        await service.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

# ---- Error envelope ----

def _status_for(exc: JobError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ConflictError, InvalidJobStateError, LeaseError)):
        return 409
    # ValidationError and anything else the caller got wrong
    return 400

@app.exception_handler(JobError)
async def job_error_handler(request: Request, exc: JobError):
    return JSONResponse(status_code=_status_for(exc), content={"success": False, "error": str(exc)})

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "Invalid request", "details": jsonable_errors(exc)},
    )

def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]

# ---- Routes ----

# Queue and recurring routes sit under /api/jobs and must precede /api/jobs/{job_id}
app.include_router(queues_router, prefix="/api/jobs/queues", tags=["queues"])
app.include_router(recurring_router, prefix="/api/jobs/recurring", tags=["recurring"])
app.include_router(jobs_router, prefix="/api/jobs", tags=["jobs"])
app.include_router(workers_router, prefix="/api/workers", tags=["workers"])
app.include_router(webhooks_router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(admin_router, prefix="/api/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
