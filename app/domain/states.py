from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()          # Waiting for scheduled_at / a worker
    PROCESSING = auto()       # Leased by a worker
    COMPLETED = auto()
    FAILED = auto()           # No more automatic retries (possibly dead-lettered)
    CANCELLED = auto()
    RETRYING = auto()         # Failed, waiting for backoff to elapse

class JobPriority(StrEnum):
    LOW = auto()
    NORMAL = auto()
    HIGH = auto()
    CRITICAL = auto()

PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.CRITICAL: 3,
}

class JobEvent(StrEnum):
    CREATED = auto()
    LEASED = auto()
    PROGRESS = auto()
    COMPLETED = auto()
    FAILED = auto()
    RETRIED = auto()
    CANCELLED = auto()
    DEAD_LETTERED = auto()
    REQUEUED = auto()
    TIMED_OUT = auto()

class WorkerStatus(StrEnum):
    IDLE = auto()
    WORKING = auto()
    STOPPING = auto()
    STOPPED = auto()

class WebhookEventStatus(StrEnum):
    PENDING = auto()
    SENDING = auto()
    SUCCESS = auto()
    FAILED = auto()
    RETRYING = auto()

class HttpMethod(StrEnum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

RUNNABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRYING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)

_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.RETRYING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.RETRYING,
        JobStatus.PENDING,
        JobStatus.CANCELLED,
    }),
    # Manual retry only
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    return JobStatus(target) in _TRANSITIONS[JobStatus(current)]
