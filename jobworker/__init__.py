from .client import WorkerClient
from .runner import JobContext, JobRunner, PermanentJobError
from .worker import Handler, Middleware, Worker

__all__ = [
    "Handler",
    "JobContext",
    "JobRunner",
    "Middleware",
    "PermanentJobError",
    "Worker",
    "WorkerClient",
]
