from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of runnable jobs (pending or retrying)', ['queue_name'])
JOBS_INFLIGHT = Gauge('jobs_inflight', 'Number of jobs currently leased')

JOB_ENQUEUED_TOTAL = Counter('jobs_enqueued_total', 'Total jobs enqueued', ['queue_name', 'priority'])
JOB_LEASE_TOTAL = Counter('job_lease_total', 'Total jobs leased to workers', ['queue_name'])
JOB_COMPLETE_TOTAL = Counter('job_complete_total', 'Total jobs completed', ['queue_name'])
JOB_FAILURES = Counter('job_failures_total', 'Total job failures', ['queue_name', 'type'])  # type=retryable|final|dead_letter
JOB_REAPED_TOTAL = Counter('job_reaped_total', 'Jobs recovered by the reaper', ['reason'])  # reason=lease_expired|timeout

JOB_START_DELAY = Histogram('job_start_delay_seconds', 'Time from scheduled_at to lease', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])
JOB_DURATION = Histogram('job_duration_seconds', 'Time from lease to completion', buckets=[1.0, 5.0, 10.0, 60.0, 120.0, 300.0])

WEBHOOK_DELIVERIES = Counter('webhook_deliveries_total', 'Webhook delivery attempts', ['result'])  # result=success|retrying|failed
WEBHOOK_DELIVERY_DURATION = Histogram('webhook_delivery_seconds', 'Webhook HTTP round-trip time', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0])

WORKERS_HEALTHY = Gauge('job_workers_healthy', 'Workers with a recent heartbeat')

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
