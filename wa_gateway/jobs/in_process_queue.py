"""In-process bulk job registry using asyncio.

Each running job gets its own asyncio task driving a JobExecutor; jobs
interleave on the event loop while items within a job stay strictly
sequential. With a StateStore attached, every update is snapshotted and
unfinished jobs are picked back up on start().
"""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

import structlog
from pydantic import ValidationError

from wa_gateway.clock import utcnow
from wa_gateway.config import settings
from wa_gateway.errors import InvalidTransition, JobNotFound, ValidationFailed
from wa_gateway.events.broadcaster import ProgressBroadcaster
from wa_gateway.jobs.dispatcher import ItemInput, JobDispatcher, OptionsInput
from wa_gateway.jobs.executor import JobExecutor, JobSignals
from wa_gateway.jobs.models import (
    JobItem,
    JobOptions,
    JobRecord,
    JobStatus,
    JobType,
)
from wa_gateway.storage.state_store import StateStore
from wa_gateway.transport.base import MessageSender

logger = structlog.get_logger(__name__)


class InProcessQueue(JobDispatcher):
    """Local job queue. One executor task per active job."""

    def __init__(
        self,
        sender: MessageSender,
        store: Optional[StateStore] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        max_batch_size: Optional[int] = None,
    ):
        self._sender = sender
        self._store = store
        self._broadcaster = broadcaster
        self._max_batch_size = max_batch_size or settings.max_batch_size
        self._jobs: Dict[str, JobRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._signals: Dict[str, JobSignals] = {}
        self._housekeeping: Optional[asyncio.Task] = None
        self._running = False

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        if self._store is not None:
            self._restore()
        self._housekeeping = asyncio.create_task(self._housekeeping_loop())

    async def stop(self) -> None:
        self._running = False
        if self._housekeeping:
            self._housekeeping.cancel()
            try:
                await self._housekeeping
            except asyncio.CancelledError:
                pass
            self._housekeeping = None

        # Interrupted jobs keep their last snapshot (status processing) and
        # resume from the cursor on the next start().
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def join(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobRecord]:
        """Wait for the job's current executor to stop. Returns a snapshot."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.get_job(job_id)

    # -- creation -----------------------------------------------------------

    def create_job(
        self,
        job_type: JobType,
        device_id: str,
        items: Sequence[ItemInput],
        options: OptionsInput = None,
        retry_of: Optional[str] = None,
    ) -> str:
        try:
            job_type = JobType(job_type)
        except ValueError as exc:
            raise ValidationFailed(f"Unknown job type: {job_type}") from exc
        job_items = self._validate_items(job_type, items)
        job_options = self._build_options(options)

        job = JobRecord(
            type=job_type,
            device_id=device_id,
            items=job_items,
            options=job_options,
            retry_of=retry_of,
        )
        # a job only becomes visible once its first snapshot is written
        if self._store is not None:
            self._store.save_job(job)
        self._jobs[job.id] = job
        logger.info(
            "job_created",
            job_id=job.id,
            job_type=job_type.value,
            device_id=device_id,
            total=job.progress.total,
            delay_seconds=job_options.delay_seconds,
            retry_of=retry_of,
        )
        self._publish(job, True)

        if job_options.auto_start:
            self._attach(job)
        return job.id

    def _validate_items(self, job_type: JobType, items: Sequence[ItemInput]) -> List[JobItem]:
        if not items:
            raise ValidationFailed("items must not be empty")
        if len(items) > self._max_batch_size:
            raise ValidationFailed(
                f"At most {self._max_batch_size} items per job (got {len(items)})"
            )

        job_items = []
        for index, raw in enumerate(items):
            try:
                item = raw if isinstance(raw, JobItem) else JobItem.model_validate(raw)
            except ValidationError as exc:
                raise ValidationFailed(f"Item {index} is invalid: {exc}") from exc
            if not item.target:
                raise ValidationFailed(f"Item {index} has no target")
            if job_type == JobType.SEND_TEXT and not item.message:
                raise ValidationFailed(f"Item {index} requires 'message'")
            if job_type == JobType.SEND_MEDIA and item.media is None:
                raise ValidationFailed(f"Item {index} requires 'media'")
            job_items.append(item.model_copy(deep=True))
        return job_items

    def _build_options(self, options: OptionsInput) -> JobOptions:
        if isinstance(options, JobOptions):
            return options.model_copy()
        values = {"delay_seconds": settings.default_delay_seconds}
        values.update({k: v for k, v in (options or {}).items() if v is not None})
        try:
            return JobOptions.model_validate(values)
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid job options: {exc}") from exc

    # -- queries ------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        device_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[JobRecord]:
        # newest insertion first so equal timestamps keep creation order
        jobs = list(reversed(list(self._jobs.values())))
        if status:
            jobs = [j for j in jobs if j.status == status]
        if job_type:
            jobs = [j for j in jobs if j.type == job_type]
        if device_id:
            jobs = [j for j in jobs if j.device_id == device_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return [j.snapshot() for j in jobs]

    def get_statistics(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats

    # -- control signals ----------------------------------------------------

    def start_job(self, job_id: str) -> bool:
        job = self._require(job_id)
        if job.status != JobStatus.QUEUED or job_id in self._tasks:
            return False
        self._attach(job)
        return True

    def cancel_job(self, job_id: str) -> bool:
        job = self._require(job_id)
        if job.is_terminal:
            return False

        signals = self._signals.get(job_id)
        if signals is not None and job_id in self._tasks:
            # the executor settles the status at its next boundary
            signals.request_cancel()
            logger.info("job_cancel_requested", job_id=job_id, cursor=job.cursor)
            return True

        job.transition(JobStatus.CANCELLED)
        logger.info("job_cancelled", job_id=job_id, cursor=job.cursor)
        self._on_update(job, True)
        return True

    def pause_job(self, job_id: str) -> bool:
        job = self._require(job_id)
        signals = self._signals.get(job_id)
        if job.status != JobStatus.PROCESSING or signals is None:
            return False
        signals.request_pause()
        logger.info("job_pause_requested", job_id=job_id, cursor=job.cursor)
        return True

    def resume_job(self, job_id: str) -> bool:
        job = self._require(job_id)
        if job.status != JobStatus.PAUSED or job_id in self._tasks:
            return False
        logger.info("job_resuming", job_id=job_id, cursor=job.cursor)
        self._attach(job)
        return True

    def retry_job(self, job_id: str) -> str:
        job = self._require(job_id)
        if not job.is_terminal:
            raise InvalidTransition(f"Job {job_id} is not in a terminal state")
        if job.progress.failed == 0:
            raise InvalidTransition(f"Job {job_id} has no failed items to retry")

        failed_items = job.failed_items()
        logger.info("job_retrying", job_id=job_id, items=len(failed_items))
        return self.create_job(
            job.type,
            job.device_id,
            failed_items,
            options=job.options,
            retry_of=job.id,
        )

    # -- housekeeping -------------------------------------------------------

    def cleanup_old_jobs(self, hours: Optional[int] = None) -> int:
        """Drop terminal jobs finished more than ``hours`` ago."""
        hours = settings.job_retention_hours if hours is None else hours
        cutoff = utcnow() - timedelta(hours=hours)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            if self._store is not None:
                self._store.delete_job(job_id)
            if self._broadcaster is not None:
                self._broadcaster.forget(job_id)
        if expired:
            logger.info("jobs_cleaned_up", count=len(expired), retention_hours=hours)
        return len(expired)

    async def _housekeeping_loop(self) -> None:
        """Periodically evict old terminal jobs."""
        while self._running:
            try:
                await asyncio.sleep(settings.cleanup_interval_seconds)
            except asyncio.CancelledError:
                break
            try:
                self.cleanup_old_jobs()
            except OSError as exc:
                logger.error("job_cleanup_failed", error=str(exc))

    # -- internals ----------------------------------------------------------

    def _require(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _attach(self, job: JobRecord) -> None:
        signals = JobSignals()
        executor = JobExecutor(job, self._sender, signals=signals, on_update=self._on_update)
        self._signals[job.id] = signals
        self._tasks[job.id] = asyncio.create_task(self._run_executor(executor))

    async def _run_executor(self, executor: JobExecutor) -> None:
        job_id = executor.job.id
        try:
            await executor.run()
        finally:
            self._tasks.pop(job_id, None)
            self._signals.pop(job_id, None)

    def _on_update(self, job: JobRecord, force: bool = False) -> None:
        # subscribers hear about the change even when the snapshot write fails
        try:
            if self._store is not None:
                self._store.save_job(job)
        finally:
            self._publish(job, force)

    def _publish(self, job: JobRecord, force: bool = False) -> None:
        if self._broadcaster is not None:
            self._broadcaster.publish(job, force=force)

    def _restore(self) -> None:
        """Reload snapshots and re-attach jobs that were running."""
        expired = self._store.cleanup_expired(settings.job_retention_hours)
        if expired:
            logger.info("expired_job_snapshots_removed", count=expired)
        resumed = 0
        for job in self._store.load_jobs():
            self._jobs[job.id] = job
            if job.status == JobStatus.PROCESSING or (
                job.status == JobStatus.QUEUED and job.options.auto_start
            ):
                self._attach(job)
                resumed += 1
        if self._jobs:
            logger.info("jobs_restored", count=len(self._jobs), resumed=resumed)
