"""Gateway error taxonomy.

Per-item send failures never surface through these; they are recorded
on the job and the batch continues.
"""


class GatewayError(Exception):
    """Base class for errors surfaced at the service boundary."""


class ValidationFailed(GatewayError):
    """Request rejected before anything was created."""


class JobNotFound(GatewayError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(GatewayError):
    """Control action not permitted in the job's current state."""


class InvalidSchedule(GatewayError):
    """Schedule time is not strictly in the future."""


class ScheduleNotFound(GatewayError):
    def __init__(self, schedule_id: str):
        super().__init__(f"Scheduled message {schedule_id} not found")
        self.schedule_id = schedule_id


class SendFailed(GatewayError):
    """Raised by a transport when the bridge rejects a send."""
