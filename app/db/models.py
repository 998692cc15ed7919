from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, Text, JSON, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from app.db.session import Base
from app.domain.states import JobStatus, JobEvent, JobPriority, WorkerStatus, WebhookEventStatus, HttpMethod
from app.utils.clock import utcnow

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests/dev)
JSONType = JSON().with_variant(JSONB(), "postgresql")

ALL_PRIORITIES = [p.value for p in JobPriority]

class Agency(Base):
    __tablename__ = "agencies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    api_key: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class JobQueue(Base):
    __tablename__ = "job_queues"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Admission control
    max_workers: Mapped[int] = mapped_column(Integer, default=5)
    max_jobs_per_worker: Mapped[int] = mapped_column(Integer, default=10)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, default=60)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, default=3600)

    # Defaults applied at enqueue
    default_max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    default_timeout_seconds: Mapped[int] = mapped_column(Integer, default=300)

    # Retry policy
    retry_delay_base_seconds: Mapped[int] = mapped_column(Integer, default=60)
    retry_delay_max_seconds: Mapped[int] = mapped_column(Integer, default=3600)
    dead_letter_queue_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dead_letter_after_attempts: Mapped[int] = mapped_column(Integer, default=5)
    allowed_priorities: Mapped[list[str]] = mapped_column(JSONType, default=lambda: list(ALL_PRIORITIES))

    # Retention
    retention_completed_hours: Mapped[int] = mapped_column(Integer, default=168)
    retention_failed_hours: Mapped[int] = mapped_column(Integer, default=720)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue_name: Mapped[str] = mapped_column(String, index=True, nullable=False)
    job_type: Mapped[str] = mapped_column(String, index=True, nullable=False)
    job_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    payload: Mapped[Any] = mapped_column(JSONType, default=dict)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    # Core orchestration fields
    status: Mapped[JobStatus] = mapped_column(String(16), default=JobStatus.PENDING, index=True)
    priority: Mapped[JobPriority] = mapped_column(String(16), default=JobPriority.NORMAL)
    priority_rank: Mapped[int] = mapped_column(Integer, default=1)

    # Retry logic
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300)

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    delay_seconds: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Outcome
    result: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    worker_hostname: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    parent_job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True)
    recurring_job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)

    progress_current: Mapped[int] = mapped_column(Integer, default=0)
    progress_total: Mapped[int] = mapped_column(Integer, default=100)
    progress_message: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    agency_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("agencies.id"), index=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Optimization for the poll query: runnable jobs per queue ordered by priority
        Index(
            "ix_jobs_poll", "queue_name", "status", "priority_rank", "scheduled_at",
            postgresql_where=text("status IN ('pending', 'retrying')"),
        ),
    )

class JobDependency(Base):
    __tablename__ = "job_dependencies"

    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    depends_on_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True, index=True)

class JobLease(Base):
    __tablename__ = "job_leases"

    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    worker_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    lease_token: Mapped[UUID] = mapped_column(Uuid, default=uuid4)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class JobExecution(Base):
    __tablename__ = "job_executions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    queue_name: Mapped[str] = mapped_column(String, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    worker_hostname: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[JobStatus] = mapped_column(String(16), default=JobStatus.PROCESSING)

    result: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        # Rate limiting counts attempts started per queue in a time window
        Index("ix_job_executions_queue_started", "queue_name", "started_at"),
    )

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (e.g. worker_id, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

class JobWorker(Base):
    __tablename__ = "job_workers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    worker_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    hostname: Mapped[str] = mapped_column(String, nullable=False)
    process_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    queues: Mapped[list[str]] = mapped_column(JSONType, default=list)
    max_concurrent_jobs: Mapped[int] = mapped_column(Integer, default=5)

    status: Mapped[WorkerStatus] = mapped_column(String(16), default=WorkerStatus.IDLE)
    is_healthy: Mapped[bool] = mapped_column(Boolean, default=True)

    jobs_processed: Mapped[int] = mapped_column(Integer, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, default=0)
    total_processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_heartbeat: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    last_job_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    environment: Mapped[str] = mapped_column(String, default="development")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class RecurringJob(Base):
    __tablename__ = "recurring_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    queue_name: Mapped[str] = mapped_column(String, nullable=False)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[Any] = mapped_column(JSONType, default=dict)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    priority: Mapped[JobPriority] = mapped_column(String(16), default=JobPriority.NORMAL)

    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300)

    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    total_runs: Mapped[int] = mapped_column(Integer, default=0)
    successful_runs: Mapped[int] = mapped_column(Integer, default=0)
    failed_runs: Mapped[int] = mapped_column(Integer, default=0)

    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    agency_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("agencies.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class Webhook(Base):
    __tablename__ = "webhooks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    agency_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("agencies.id"), index=True, nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    url: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[HttpMethod] = mapped_column(String(8), default=HttpMethod.POST)
    headers: Mapped[dict[str, str]] = mapped_column(JSONType, default=dict)
    secret_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    events: Mapped[list[str]] = mapped_column(JSONType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    retry_attempts: Mapped[int] = mapped_column(Integer, default=3)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, default=60)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=30)
    filters: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    total_requests: Mapped[int] = mapped_column(Integer, default=0)
    successful_requests: Mapped[int] = mapped_column(Integer, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, default=0)
    last_triggered: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    webhook_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("webhooks.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String, index=True, nullable=False)
    event_data: Mapped[Any] = mapped_column(JSONType, default=dict)

    status: Mapped[WebhookEventStatus] = mapped_column(String(16), default=WebhookEventStatus.PENDING, index=True)
    http_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    request_headers: Mapped[Optional[dict[str, str]]] = mapped_column(JSONType, nullable=True)
    request_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "ix_webhook_events_due", "status", "next_retry_at",
            postgresql_where=text("status IN ('pending', 'retrying')"),
        ),
    )

class WebhookEventType(Base):
    __tablename__ = "webhook_event_types"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    payload_schema: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    agency_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String(16), default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
