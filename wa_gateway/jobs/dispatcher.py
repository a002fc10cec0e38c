"""Job dispatcher interface for bulk-send jobs."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union

from wa_gateway.jobs.models import JobItem, JobOptions, JobRecord, JobStatus, JobType

ItemInput = Union[JobItem, Dict[str, Any]]
OptionsInput = Union[JobOptions, Dict[str, Any], None]


class JobDispatcher(ABC):
    """Abstract interface for bulk job registries.

    Control methods return immediately; execution happens in the
    background. Unknown ids raise JobNotFound.
    """

    @abstractmethod
    def create_job(
        self,
        job_type: JobType,
        device_id: str,
        items: Sequence[ItemInput],
        options: OptionsInput = None,
    ) -> str:
        """Validate and register a job. Returns job_id."""
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Read-only snapshot of a job, or None."""
        ...

    @abstractmethod
    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        device_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[JobRecord]:
        ...

    @abstractmethod
    def start_job(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def cancel_job(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def pause_job(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def resume_job(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def retry_job(self, job_id: str) -> str:
        """Create a sibling job holding only the failed items. Returns its id."""
        ...

    @abstractmethod
    def get_statistics(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (restore state, housekeeping loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
