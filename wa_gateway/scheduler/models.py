"""Scheduled message record."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import uuid

from wa_gateway.clock import utcnow


class ScheduledMessage(BaseModel):
    """A single text message armed to fire once at ``fire_at``.

    ``timezone`` is kept for display; firing is driven by the absolute
    UTC instant only.
    """
    id: str = Field(default_factory=lambda: f"sched_{uuid.uuid4().hex}")
    device_id: str
    target: str
    message: str
    fire_at: datetime
    timezone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def seconds_until_fire(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (self.fire_at - now).total_seconds()

    def to_response(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.id,
            "device_id": self.device_id,
            "target": self.target,
            "message": self.message,
            "fire_at": self.fire_at.isoformat(),
            "timezone": self.timezone,
            "created_at": self.created_at.isoformat(),
        }
