"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

def _ts(name: str, nullable: bool = True, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kw)

def upgrade() -> None:
    op.create_table(
        "agencies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("api_key", sa.String(), nullable=True, unique=True),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "job_queues",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean()),
        sa.Column("max_workers", sa.Integer()),
        sa.Column("max_jobs_per_worker", sa.Integer()),
        sa.Column("rate_limit_per_minute", sa.Integer()),
        sa.Column("rate_limit_per_hour", sa.Integer()),
        sa.Column("default_max_attempts", sa.Integer()),
        sa.Column("default_timeout_seconds", sa.Integer()),
        sa.Column("retry_delay_base_seconds", sa.Integer()),
        sa.Column("retry_delay_max_seconds", sa.Integer()),
        sa.Column("dead_letter_queue_name", sa.String(), nullable=True),
        sa.Column("dead_letter_after_attempts", sa.Integer()),
        sa.Column("allowed_priorities", JSONType),
        sa.Column("retention_completed_hours", sa.Integer()),
        sa.Column("retention_failed_hours", sa.Integer()),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("job_name", sa.String(), nullable=True),
        sa.Column("payload", JSONType),
        sa.Column("context", JSONType),
        sa.Column("status", sa.String(16)),
        sa.Column("priority", sa.String(16)),
        sa.Column("priority_rank", sa.Integer()),
        sa.Column("max_attempts", sa.Integer()),
        sa.Column("attempt_count", sa.Integer()),
        sa.Column("timeout_seconds", sa.Integer()),
        _ts("scheduled_at"),
        sa.Column("delay_seconds", sa.Integer()),
        _ts("started_at"),
        _ts("completed_at"),
        _ts("failed_at"),
        sa.Column("result", JSONType, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", JSONType, nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("worker_hostname", sa.String(), nullable=True),
        sa.Column("parent_job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("recurring_job_id", sa.Uuid(), nullable=True),
        sa.Column("progress_current", sa.Integer()),
        sa.Column("progress_total", sa.Integer()),
        sa.Column("progress_message", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("agency_id", sa.String(), sa.ForeignKey("agencies.id"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_jobs_queue_name", "jobs", ["queue_name"])
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_scheduled_at", "jobs", ["scheduled_at"])
    op.create_index("ix_jobs_recurring_job_id", "jobs", ["recurring_job_id"])
    op.create_index("ix_jobs_agency_id", "jobs", ["agency_id"])
    op.create_index(
        "ix_jobs_poll", "jobs", ["queue_name", "status", "priority_rank", "scheduled_at"],
        postgresql_where=sa.text("status IN ('pending', 'retrying')"),
    )

    op.create_table(
        "job_dependencies",
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("depends_on_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_index("ix_job_dependencies_depends_on_id", "job_dependencies", ["depends_on_id"])

    op.create_table(
        "job_leases",
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("lease_token", sa.Uuid()),
        _ts("expires_at", nullable=False),
        _ts("last_heartbeat_at"),
    )
    op.create_index("ix_job_leases_worker_id", "job_leases", ["worker_id"])
    op.create_index("ix_job_leases_expires_at", "job_leases", ["expires_at"])

    op.create_table(
        "job_executions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE")),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("worker_hostname", sa.String(), nullable=True),
        _ts("started_at"),
        _ts("completed_at"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16)),
        sa.Column("result", JSONType, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", JSONType, nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_job_executions_job_id", "job_executions", ["job_id"])
    op.create_index("ix_job_executions_started_at", "job_executions", ["started_at"])
    op.create_index("ix_job_executions_queue_started", "job_executions", ["queue_name", "started_at"])

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE")),
        sa.Column("event_type", sa.String(), nullable=False),
        _ts("timestamp"),
        sa.Column("meta", JSONType),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])

    op.create_table(
        "job_workers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("worker_id", sa.String(), nullable=False, unique=True),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("process_id", sa.Integer(), nullable=True),
        sa.Column("queues", JSONType),
        sa.Column("max_concurrent_jobs", sa.Integer()),
        sa.Column("status", sa.String(16)),
        sa.Column("is_healthy", sa.Boolean()),
        sa.Column("jobs_processed", sa.Integer()),
        sa.Column("jobs_failed", sa.Integer()),
        sa.Column("total_processing_time_ms", sa.Integer()),
        _ts("started_at"),
        _ts("last_heartbeat"),
        _ts("last_job_at"),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("environment", sa.String()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_job_workers_last_heartbeat", "job_workers", ["last_heartbeat"])

    op.create_table(
        "recurring_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("payload", JSONType),
        sa.Column("context", JSONType),
        sa.Column("priority", sa.String(16)),
        sa.Column("cron_expression", sa.String(), nullable=False),
        sa.Column("timezone", sa.String()),
        sa.Column("is_active", sa.Boolean()),
        sa.Column("max_attempts", sa.Integer()),
        sa.Column("timeout_seconds", sa.Integer()),
        _ts("last_run_at"),
        _ts("next_run_at"),
        sa.Column("last_job_id", sa.Uuid(), nullable=True),
        sa.Column("total_runs", sa.Integer()),
        sa.Column("successful_runs", sa.Integer()),
        sa.Column("failed_runs", sa.Integer()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("agency_id", sa.String(), sa.ForeignKey("agencies.id"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_recurring_jobs_next_run_at", "recurring_jobs", ["next_run_at"])

    op.create_table(
        "webhooks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("agency_id", sa.String(), sa.ForeignKey("agencies.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("method", sa.String(8)),
        sa.Column("headers", JSONType),
        sa.Column("secret_token", sa.String(), nullable=True),
        sa.Column("events", JSONType),
        sa.Column("is_active", sa.Boolean()),
        sa.Column("retry_attempts", sa.Integer()),
        sa.Column("retry_delay_seconds", sa.Integer()),
        sa.Column("timeout_seconds", sa.Integer()),
        sa.Column("filters", JSONType),
        sa.Column("total_requests", sa.Integer()),
        sa.Column("successful_requests", sa.Integer()),
        sa.Column("failed_requests", sa.Integer()),
        _ts("last_triggered"),
        sa.Column("created_by", sa.String(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_webhooks_agency_id", "webhooks", ["agency_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("webhook_id", sa.Uuid(), sa.ForeignKey("webhooks.id", ondelete="CASCADE")),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data", JSONType),
        sa.Column("status", sa.String(16)),
        sa.Column("http_status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("triggered_at"),
        _ts("completed_at"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("attempt_number", sa.Integer()),
        _ts("next_retry_at"),
        sa.Column("request_headers", JSONType, nullable=True),
        sa.Column("request_body", sa.Text(), nullable=True),
    )
    op.create_index("ix_webhook_events_webhook_id", "webhook_events", ["webhook_id"])
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])
    op.create_index("ix_webhook_events_triggered_at", "webhook_events", ["triggered_at"])
    op.create_index(
        "ix_webhook_events_due", "webhook_events", ["status", "next_retry_at"],
        postgresql_where=sa.text("status IN ('pending', 'retrying')"),
    )

    op.create_table(
        "webhook_event_types",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("payload_schema", JSONType, nullable=True),
        sa.Column("is_active", sa.Boolean()),
        _ts("created_at"),
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", JSONType),
        sa.Column("agency_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(16)),
        _ts("created_at"),
        _ts("published_at"),
    )
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])

def downgrade() -> None:
    for table in (
        "outbox_events",
        "webhook_event_types",
        "webhook_events",
        "webhooks",
        "recurring_jobs",
        "job_workers",
        "job_events",
        "job_executions",
        "job_leases",
        "job_dependencies",
        "jobs",
        "job_queues",
        "agencies",
    ):
        op.drop_table(table)
