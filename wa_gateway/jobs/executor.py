"""Drives one job through its items, one send at a time.

Control signals are only looked at between items: an in-flight send
always settles before a pause or cancel takes effect. The inter-item
delay wakes early when a signal arrives so the next boundary check
happens right away.
"""

import asyncio
import traceback
from typing import Callable, Optional

import structlog

from wa_gateway.jobs.models import JobRecord, JobStatus
from wa_gateway.transport.base import MessageSender

logger = structlog.get_logger(__name__)

# fn(job, force) -> None; called after every attempt and status change
UpdateCallback = Callable[[JobRecord, bool], None]


class JobSignals:
    """Pause/cancel requests for one executor attachment."""

    def __init__(self):
        self.cancel_requested = False
        self.pause_requested = False
        self._wake = asyncio.Event()

    def request_cancel(self) -> None:
        self.cancel_requested = True
        self._wake.set()

    def request_pause(self) -> None:
        self.pause_requested = True
        self._wake.set()

    @property
    def pending(self) -> bool:
        return self.cancel_requested or self.pause_requested

    async def sleep(self, seconds: float) -> None:
        """Wait ``seconds`` unless a signal arrives first."""
        if seconds <= 0 or self.pending:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class JobExecutor:
    """Sequential, rate-limited executor for a single JobRecord."""

    def __init__(
        self,
        job: JobRecord,
        sender: MessageSender,
        signals: Optional[JobSignals] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        self.job = job
        self.signals = signals or JobSignals()
        self._sender = sender
        self._on_update = on_update
        self._log = logger.bind(job_id=job.id, job_type=job.type.value)

    async def run(self) -> JobRecord:
        job = self.job
        try:
            if job.status != JobStatus.PROCESSING:
                job.transition(JobStatus.PROCESSING)
            self._log.info("job_processing", cursor=job.cursor, total=job.progress.total)
            self._notify(force=True)

            while job.cursor < len(job.items):
                # 1-2. boundary checks, cancel wins over pause
                if self.signals.cancel_requested:
                    job.transition(JobStatus.CANCELLED)
                    self._log.info("job_cancelled", cursor=job.cursor, skipped=job.remaining)
                    self._notify(force=True)
                    return job
                if self.signals.pause_requested:
                    job.transition(JobStatus.PAUSED)
                    self._log.info("job_paused", cursor=job.cursor)
                    self._notify(force=True)
                    return job

                # 3-5. one attempt, failures stay with the item
                await self._attempt()
                self._notify()

                # 6. rate limit between items
                if job.cursor < len(job.items):
                    await self.signals.sleep(job.options.delay_seconds)

            # 7. all items attempted
            job.finish()
            self._log.info(
                "job_finished",
                status=job.status.value,
                completed=job.progress.completed,
                failed=job.progress.failed,
            )
            self._notify(force=True)
        except Exception as e:
            self._log.exception("job_executor_crashed", cursor=job.cursor)
            if job.is_terminal:
                # the record already settled; leave it untouched
                return job
            job.fail_fatally(f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}")
            try:
                self._notify(force=True)
            except Exception:
                # nothing left to settle; the in-memory record stays failed
                self._log.exception("job_update_failed_after_crash")
        return job

    async def _attempt(self) -> None:
        job = self.job
        index = job.cursor
        item = job.items[index]
        try:
            receipt = await self._sender.send_item(job.type, job.device_id, item)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            job.record_failure(message)
            self._log.warning(
                "job_item_failed",
                index=index,
                total=job.progress.total,
                target=item.target,
                error=message,
            )
            return
        job.record_success(receipt)
        self._log.info("job_item_sent", index=index, total=job.progress.total, target=item.target)

    def _notify(self, force: bool = False) -> None:
        if self._on_update is not None:
            self._on_update(self.job, force)
