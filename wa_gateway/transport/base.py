"""Send Operation interface supplied by the messaging transport."""

from abc import ABC, abstractmethod
from typing import Any, Dict

from wa_gateway.jobs.models import JobItem, JobType, MediaPayload


class MessageSender(ABC):
    """Delivers one message or media item to one recipient.

    Implementations either return a receipt or raise. The job engine
    never inspects anything beyond that.
    """

    @abstractmethod
    async def send_text(self, device_id: str, target: str, text: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def send_media(
        self, device_id: str, target: str, media: MediaPayload
    ) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None

    async def send_item(
        self, job_type: JobType, device_id: str, item: JobItem
    ) -> Dict[str, Any]:
        """Route a job item to the variant its job type calls for."""
        if job_type == JobType.SEND_TEXT:
            return await self.send_text(device_id, item.target, item.message or "")
        if job_type == JobType.SEND_MEDIA:
            if item.media is None:
                raise ValueError(f"Item for {item.target} has no media payload")
            return await self.send_media(device_id, item.target, item.media)
        raise ValueError(f"Unknown job type: {job_type}")
