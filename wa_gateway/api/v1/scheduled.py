"""Scheduled message API: arm, list and cancel one-shot sends."""

from datetime import datetime
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from wa_gateway.clock import utcnow
from wa_gateway.errors import InvalidSchedule, ScheduleNotFound, ValidationFailed

router = APIRouter()

# Set by main.py during lifespan (same pattern as jobs.py)
_timer_service = None


def set_timer_service(service):
    global _timer_service
    _timer_service = service


class ScheduleRequest(BaseModel):
    to: str
    message: str
    fire_at: datetime
    timezone: Optional[str] = None


def _require_service():
    if _timer_service is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    return _timer_service


@router.post("/devices/{device_id}/scheduled-messages")
async def schedule_message(device_id: str, request: ScheduleRequest):
    service = _require_service()
    try:
        schedule_id = service.schedule(
            device_id,
            request.to,
            request.message,
            request.fire_at,
            timezone=request.timezone,
        )
    except (InvalidSchedule, ValidationFailed) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    scheduled = service.get(schedule_id)
    return {
        "schedule_id": schedule_id,
        "fire_at": scheduled.fire_at.isoformat(),
        "timezone": scheduled.timezone,
        "delay_seconds": int(scheduled.seconds_until_fire(utcnow())),
    }


@router.get("/devices/{device_id}/scheduled-messages")
async def list_device_scheduled_messages(device_id: str):
    messages = _require_service().list(device_id)
    return {
        "device_id": device_id,
        "messages": [m.to_response() for m in messages],
        "count": len(messages),
    }


@router.get("/scheduled-messages")
async def list_scheduled_messages():
    messages = _require_service().list()
    return {"messages": [m.to_response() for m in messages], "count": len(messages)}


@router.get("/scheduled-messages/{schedule_id}")
async def get_scheduled_message(schedule_id: str):
    try:
        scheduled = _require_service().require(schedule_id)
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return scheduled.to_response()


@router.delete("/scheduled-messages/{schedule_id}")
async def cancel_scheduled_message(schedule_id: str):
    """Cancel a schedule that has not fired yet."""
    if not _require_service().cancel(schedule_id):
        raise HTTPException(
            status_code=404,
            detail="Scheduled message not found or already sent",
        )
    return {"schedule_id": schedule_id, "cancelled": True}
