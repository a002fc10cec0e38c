"""Bulk job API: create jobs, poll status, issue control signals, stream progress."""

import asyncio
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import List, Optional

from wa_gateway.errors import InvalidTransition, JobNotFound, ValidationFailed
from wa_gateway.events.broadcaster import format_sse
from wa_gateway.jobs.models import JobItem, JobRecord, JobStatus, JobType, MediaPayload

router = APIRouter()

# These will be set by main.py during lifespan
_dispatcher = None
_broadcaster = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_broadcaster(broadcaster):
    global _broadcaster
    _broadcaster = broadcaster


class TextMessage(BaseModel):
    to: str
    message: str


class MediaMessage(MediaPayload):
    to: str


class JobOptionsRequest(BaseModel):
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    auto_start: bool = True


class SendTextJobRequest(BaseModel):
    messages: List[TextMessage]
    options: JobOptionsRequest = Field(default_factory=JobOptionsRequest)


class SendMediaJobRequest(BaseModel):
    items: List[MediaMessage]
    options: JobOptionsRequest = Field(default_factory=JobOptionsRequest)


class JobCreatedResponse(BaseModel):
    job_id: str
    status: str
    total: int
    delay_seconds: float


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


def _serialize_job(job: JobRecord) -> dict:
    return {
        "id": job.id,
        "type": job.type.value,
        "device_id": job.device_id,
        "status": job.status.value,
        "cursor": job.cursor,
        "progress": job.progress.model_dump(),
        "results": [
            {
                "index": r.index,
                "target": r.target,
                "outcome": r.outcome.value,
                "detail": r.detail,
                "timestamp": r.timestamp.isoformat(),
            }
            for r in job.results
        ],
        "options": job.options.model_dump(),
        "error": job.error,
        "retry_of": job.retry_of,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def _create(job_type: JobType, device_id: str, items: List[JobItem], options: JobOptionsRequest):
    dispatcher = _require_dispatcher()
    try:
        job_id = dispatcher.create_job(
            job_type,
            device_id,
            items,
            options=options.model_dump(),
        )
    except ValidationFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    job = dispatcher.get_job(job_id)
    return JobCreatedResponse(
        job_id=job_id,
        status=job.status.value,
        total=job.progress.total,
        delay_seconds=job.options.delay_seconds,
    )


@router.post("/devices/{device_id}/jobs/send-text", response_model=JobCreatedResponse)
async def create_send_text_job(device_id: str, request: SendTextJobRequest):
    """Queue a bulk text send. Poll GET /api/v1/jobs/{id} for progress."""
    items = [JobItem(target=m.to, message=m.message) for m in request.messages]
    return _create(JobType.SEND_TEXT, device_id, items, request.options)


@router.post("/devices/{device_id}/jobs/send-media", response_model=JobCreatedResponse)
async def create_send_media_job(device_id: str, request: SendMediaJobRequest):
    """Queue a bulk media send."""
    items = [
        JobItem(target=m.to, media=MediaPayload(**m.model_dump(exclude={"to"})))
        for m in request.items
    ]
    return _create(JobType.SEND_MEDIA, device_id, items, request.options)


@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = None,
    type: Optional[JobType] = None,
    device_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    dispatcher = _require_dispatcher()
    jobs = dispatcher.list_jobs(status=status, job_type=type, device_id=device_id, limit=limit)
    return {"jobs": [_serialize_job(j) for j in jobs], "total": len(jobs)}


@router.get("/jobs/stats")
async def job_statistics():
    return _require_dispatcher().get_statistics()


@router.get("/jobs/events")
async def stream_job_events(request: Request):
    """Server-sent events with throttled job progress."""
    if _broadcaster is None:
        raise HTTPException(status_code=503, detail="Progress events not initialized")

    queue = _broadcaster.subscribe()

    async def event_stream():
        try:
            yield format_sse({"type": "connected"})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event, event_name=event["type"])
        finally:
            _broadcaster.unsubscribe(queue)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the current status, progress and per-item results of a job."""
    job = _require_dispatcher().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _serialize_job(job)


def _control(action: str, job_id: str):
    dispatcher = _require_dispatcher()
    operation = {
        "start": dispatcher.start_job,
        "cancel": dispatcher.cancel_job,
        "pause": dispatcher.pause_job,
        "resume": dispatcher.resume_job,
    }[action]
    try:
        accepted = operation(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")

    job = dispatcher.get_job(job_id)
    if not accepted:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot {action} job in status '{job.status.value}'",
        )
    return {"id": job_id, "action": action, "status": job.status.value}


@router.post("/jobs/{job_id}/start")
async def start_job(job_id: str):
    return _control("start", job_id)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    return _control("cancel", job_id)


@router.post("/jobs/{job_id}/pause")
async def pause_job(job_id: str):
    return _control("pause", job_id)


@router.post("/jobs/{job_id}/resume")
async def resume_job(job_id: str):
    return _control("resume", job_id)


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str):
    """Create a new job holding only the failed items of a finished job."""
    dispatcher = _require_dispatcher()
    try:
        new_job_id = dispatcher.retry_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    new_job = dispatcher.get_job(new_job_id)
    return {
        "job_id": new_job_id,
        "retry_of": job_id,
        "status": new_job.status.value,
        "total": new_job.progress.total,
    }
