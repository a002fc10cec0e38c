"""WhatsApp Gateway job engine - FastAPI application."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wa_gateway.config import settings
from wa_gateway.api.v1.router import v1_router
from wa_gateway.api.v1.health import router as health_root_router
from wa_gateway.api.v1 import health as health_api
from wa_gateway.api.v1 import jobs as jobs_api
from wa_gateway.api.v1 import scheduled as scheduled_api
from wa_gateway.events.broadcaster import ProgressBroadcaster
from wa_gateway.jobs.in_process_queue import InProcessQueue
from wa_gateway.scheduler.timer_service import ScheduledMessageService
from wa_gateway.storage.state_store import StateStore
from wa_gateway.transport.base import MessageSender
from wa_gateway.transport.bridge_client import BridgeSender


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger(__name__)


def create_app(sender: Optional[MessageSender] = None) -> FastAPI:
    """Build the app. ``sender`` overrides the bridge transport (tests, embedding)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        transport = sender or BridgeSender()
        store = StateStore(settings.state_dir) if settings.state_dir else None

        logger.info(
            "gateway_starting",
            port=settings.gateway_port,
            bridge_url=settings.bridge_url,
            state_dir=settings.state_dir,
            max_batch_size=settings.max_batch_size,
        )

        broadcaster = ProgressBroadcaster(interval=settings.progress_broadcast_interval)
        dispatcher = InProcessQueue(transport, store=store, broadcaster=broadcaster)
        timer_service = ScheduledMessageService(transport, store=store)
        await dispatcher.start()
        await timer_service.start()
        logger.info("gateway_started")

        # Wire services into API endpoints
        jobs_api.set_dispatcher(dispatcher)
        jobs_api.set_broadcaster(broadcaster)
        scheduled_api.set_timer_service(timer_service)
        health_api.set_services(dispatcher, timer_service)
        app.state.dispatcher = dispatcher
        app.state.timer_service = timer_service

        yield

        logger.info("gateway_shutting_down")
        await timer_service.stop()
        await dispatcher.stop()
        await transport.aclose()
        jobs_api.set_dispatcher(None)
        jobs_api.set_broadcaster(None)
        scheduled_api.set_timer_service(None)
        health_api.set_services(None, None)

    app = FastAPI(
        title="WhatsApp Gateway Job Engine",
        description="Bulk send jobs and scheduled messages over a WhatsApp-Web bridge",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("wa_gateway.main:app", host="0.0.0.0", port=settings.gateway_port)


if __name__ == "__main__":
    run()
