class JobError(Exception):
    """Base exception for job queue and webhook errors."""
    pass

class ValidationError(JobError):
    pass

class ConflictError(JobError):
    pass

class NotFoundError(JobError):
    entity = "Object"

    def __init__(self, object_id):
        self.object_id = object_id
        super().__init__(f"{self.entity} {object_id} not found")

class JobNotFoundError(NotFoundError):
    entity = "Job"

class QueueNotFoundError(NotFoundError):
    entity = "Queue"

class RecurringJobNotFoundError(NotFoundError):
    entity = "Recurring job"

class WebhookNotFoundError(NotFoundError):
    entity = "Webhook"

class WebhookEventNotFoundError(NotFoundError):
    entity = "Webhook event"

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class LeaseError(JobError):
    pass

class LeaseExpiredError(LeaseError):
    pass

class LeaseNotFoundError(LeaseError):
    pass

class WorkerNotFoundError(NotFoundError):
    entity = "Worker"
