"""One-shot scheduled message timers.

A single coordinator task sleeps until the earliest armed deadline in a
min-heap. Cancelling drops the registry entry; its heap entry is skipped
when it surfaces. A schedule leaves the registry the moment it fires,
then its send runs as a separate task so a slow send never delays other
schedules.
"""

import asyncio
import heapq
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import structlog

from wa_gateway.clock import as_utc, utcnow
from wa_gateway.config import settings
from wa_gateway.errors import InvalidSchedule, ScheduleNotFound, ValidationFailed
from wa_gateway.scheduler.models import ScheduledMessage
from wa_gateway.storage.state_store import StateStore
from wa_gateway.transport.base import MessageSender

logger = structlog.get_logger(__name__)


class ScheduledMessageService:
    """Registry of armed schedules plus the coordinator that fires them."""

    def __init__(
        self,
        sender: MessageSender,
        store: Optional[StateStore] = None,
        shutdown_timeout: Optional[float] = None,
    ):
        self._sender = sender
        self._store = store
        self._shutdown_timeout = (
            settings.shutdown_timeout_seconds if shutdown_timeout is None else shutdown_timeout
        )
        self._scheduled: Dict[str, ScheduledMessage] = {}
        self._heap: List[Tuple[datetime, str]] = []
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._sends: Set[asyncio.Task] = set()
        self._running = False

    async def start(self) -> None:
        self._running = True
        if self._store is not None:
            self._restore()
        self._task = asyncio.create_task(self._coordinator_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._sends:
            # in-flight sends get a grace period, then are cancelled
            _, pending = await asyncio.wait(set(self._sends), timeout=self._shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("scheduled_sends_abandoned", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

    # -- public API ---------------------------------------------------------

    def schedule(
        self,
        device_id: str,
        target: str,
        message: str,
        fire_at: datetime,
        timezone: Optional[str] = None,
    ) -> str:
        """Arm a one-shot send. Raises InvalidSchedule unless fire_at is in the future."""
        if not target or not message:
            raise ValidationFailed("Scheduled message requires a target and a message")

        fire_at = as_utc(fire_at)
        now = utcnow()
        if fire_at <= now:
            raise InvalidSchedule("Schedule time must be in the future")

        scheduled = ScheduledMessage(
            device_id=device_id,
            target=target,
            message=message,
            fire_at=fire_at,
            timezone=timezone or settings.default_timezone,
            created_at=now,
        )
        if self._store is not None:
            self._store.save_schedule(scheduled)
        self._arm(scheduled)

        logger.info(
            "message_scheduled",
            schedule_id=scheduled.id,
            device_id=device_id,
            fire_at=fire_at.isoformat(),
            delay_seconds=round(scheduled.seconds_until_fire(now), 3),
        )
        return scheduled.id

    def cancel(self, schedule_id: str) -> bool:
        """Disarm a schedule. False if it already fired or never existed."""
        scheduled = self._scheduled.pop(schedule_id, None)
        if scheduled is None:
            return False
        if self._store is not None:
            self._store.delete_schedule(schedule_id)
        self._wakeup.set()
        logger.info("scheduled_message_cancelled", schedule_id=schedule_id)
        return True

    def get(self, schedule_id: str) -> Optional[ScheduledMessage]:
        scheduled = self._scheduled.get(schedule_id)
        return scheduled.model_copy() if scheduled else None

    def require(self, schedule_id: str) -> ScheduledMessage:
        scheduled = self.get(schedule_id)
        if scheduled is None:
            raise ScheduleNotFound(schedule_id)
        return scheduled

    def list(self, device_id: Optional[str] = None) -> List[ScheduledMessage]:
        """Snapshot of still-armed schedules, soonest first."""
        armed = [s.model_copy() for s in self._scheduled.values()]
        if device_id:
            armed = [s for s in armed if s.device_id == device_id]
        armed.sort(key=lambda s: s.fire_at)
        return armed

    # -- internals ----------------------------------------------------------

    def _arm(self, scheduled: ScheduledMessage) -> None:
        self._scheduled[scheduled.id] = scheduled
        earliest = self._heap[0][0] if self._heap else None
        heapq.heappush(self._heap, (scheduled.fire_at, scheduled.id))
        if earliest is None or scheduled.fire_at < earliest:
            self._wakeup.set()

    def _restore(self) -> None:
        """Re-arm persisted schedules; drop any whose time has passed."""
        now = utcnow()
        for scheduled in self._store.load_schedules():
            if scheduled.fire_at <= now:
                logger.warning(
                    "stale_schedule_dropped",
                    schedule_id=scheduled.id,
                    fire_at=scheduled.fire_at.isoformat(),
                )
                self._store.delete_schedule(scheduled.id)
                continue
            self._arm(scheduled)
        if self._scheduled:
            logger.info("schedules_restored", count=len(self._scheduled))

    def _pop_due(self, now: datetime) -> List[ScheduledMessage]:
        due = []
        while self._heap and self._heap[0][0] <= now:
            _, schedule_id = heapq.heappop(self._heap)
            scheduled = self._scheduled.pop(schedule_id, None)
            if scheduled is not None:
                due.append(scheduled)
        return due

    def _next_delay(self) -> Optional[float]:
        # discard heap entries for cancelled schedules
        while self._heap and self._heap[0][1] not in self._scheduled:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(0.0, (self._heap[0][0] - utcnow()).total_seconds())

    async def _coordinator_loop(self) -> None:
        while self._running:
            for scheduled in self._pop_due(utcnow()):
                if self._store is not None:
                    self._store.delete_schedule(scheduled.id)
                task = asyncio.create_task(self._fire(scheduled))
                self._sends.add(task)
                task.add_done_callback(self._sends.discard)

            self._wakeup.clear()
            delay = self._next_delay()
            try:
                if delay is None:
                    await self._wakeup.wait()
                else:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _fire(self, scheduled: ScheduledMessage) -> None:
        logger.info("scheduled_message_firing", schedule_id=scheduled.id, target=scheduled.target)
        try:
            receipt = await self._sender.send_text(
                scheduled.device_id, scheduled.target, scheduled.message
            )
        except Exception as exc:
            logger.error(
                "scheduled_message_failed",
                schedule_id=scheduled.id,
                target=scheduled.target,
                error=f"{type(exc).__name__}: {exc}",
            )
            return
        logger.info("scheduled_message_sent", schedule_id=scheduled.id, receipt=receipt)
