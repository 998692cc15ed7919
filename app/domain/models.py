from dataclasses import dataclass, field
from typing import Optional

from app.domain.states import JobPriority

@dataclass
class QueueConfig:
    """Effective settings for a queue, whether configured or implicit."""
    name: str
    is_active: bool = True
    max_workers: int = 5
    max_jobs_per_worker: int = 10
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 3600
    default_max_attempts: int = 3
    default_timeout_seconds: int = 300
    retry_delay_base_seconds: int = 60
    retry_delay_max_seconds: int = 3600
    dead_letter_queue_name: Optional[str] = None
    dead_letter_after_attempts: int = 5
    allowed_priorities: list[str] = field(default_factory=lambda: [p.value for p in JobPriority])
    retention_completed_hours: int = 168
    retention_failed_hours: int = 720
    configured: bool = False

@dataclass
class QueueStats:
    queue_name: str
    jobs_pending: int = 0
    jobs_processing: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    jobs_retrying: int = 0
    avg_processing_time_ms: float = 0.0
    jobs_per_minute: int = 0
    active_workers: int = 0
