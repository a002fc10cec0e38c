"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from wa_gateway.config import settings

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None
_timer_service = None


def set_services(dispatcher, timer_service):
    global _dispatcher, _timer_service
    _dispatcher = dispatcher
    _timer_service = timer_service


@router.get("/health")
async def health_check():
    """Service health plus a summary of in-flight work."""
    return {
        "status": "healthy" if _dispatcher is not None else "starting",
        "jobs": _dispatcher.get_statistics() if _dispatcher is not None else None,
        "scheduled_messages": len(_timer_service.list()) if _timer_service is not None else None,
        "durable_state": settings.state_dir is not None,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
