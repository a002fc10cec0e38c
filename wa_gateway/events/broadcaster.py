"""Fan-out of job progress snapshots to live subscribers (SSE clients)."""

import asyncio
import json
import time
from typing import Any, Dict, Optional, Set

import structlog

from wa_gateway.jobs.models import JobRecord

logger = structlog.get_logger(__name__)


class ProgressBroadcaster:
    """Publishes job progress events, throttled per job.

    Per-item updates for the same job are dropped if one went out less
    than ``interval`` seconds ago. Status changes pass ``force=True`` and
    always go out.
    """

    def __init__(self, interval: float = 1.5, max_queue: int = 100):
        self._interval = interval
        self._max_queue = max_queue
        self._subscribers: Set[asyncio.Queue] = set()
        self._last_sent: Dict[str, float] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, job: JobRecord, force: bool = False) -> bool:
        """Queue the job's progress for every subscriber. Returns False if throttled."""
        now = time.monotonic()
        last = self._last_sent.get(job.id)
        if not force and last is not None and now - last < self._interval:
            return False
        self._last_sent[job.id] = now
        if job.is_terminal:
            self._last_sent.pop(job.id, None)

        event = {"type": "job-progress", "data": job.progress_event()}
        for queue in list(self._subscribers):
            self._offer(queue, event)
        return True

    def _offer(self, queue: asyncio.Queue, event: Dict[str, Any]) -> None:
        if queue.full():
            # slow consumer: drop its oldest event
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            logger.debug("progress_subscriber_lagging")
        queue.put_nowait(event)

    def forget(self, job_id: str) -> None:
        self._last_sent.pop(job_id, None)


def format_sse(event: Dict[str, Any], event_name: Optional[str] = None) -> str:
    lines = []
    if event_name:
        lines.append(f"event: {event_name}")
    lines.append(f"data: {json.dumps(event, default=str)}")
    return "\n".join(lines) + "\n\n"
