"""Durable JSON snapshots of jobs and armed schedules.

One file per record under ``<base_dir>/jobs`` and ``<base_dir>/schedules``.
Writes go to a temp file first and are swapped in with ``os.replace``
so a crash never leaves a half-written snapshot behind.
"""

import os
import tempfile
from datetime import timedelta
from typing import List, Optional

import structlog
from pydantic import ValidationError

from wa_gateway.clock import utcnow
from wa_gateway.jobs.models import JobRecord
from wa_gateway.scheduler.models import ScheduledMessage

logger = structlog.get_logger(__name__)


class StateStore:
    """File-backed store for job records and scheduled messages."""

    def __init__(self, base_dir: Optional[str] = None):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "wa_gateway_state")
        self._jobs_dir = os.path.join(self._base_dir, "jobs")
        self._schedules_dir = os.path.join(self._base_dir, "schedules")
        os.makedirs(self._jobs_dir, exist_ok=True)
        os.makedirs(self._schedules_dir, exist_ok=True)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    # -- jobs ---------------------------------------------------------------

    def save_job(self, job: JobRecord) -> None:
        self._write(self._jobs_dir, job.id, job.model_dump_json())

    def delete_job(self, job_id: str) -> None:
        self._remove(self._jobs_dir, job_id)

    def load_jobs(self) -> List[JobRecord]:
        jobs = []
        for raw in self._read_all(self._jobs_dir):
            try:
                jobs.append(JobRecord.model_validate_json(raw))
            except ValidationError as exc:
                logger.warning("job_snapshot_unreadable", error=str(exc))
        return jobs

    # -- schedules ----------------------------------------------------------

    def save_schedule(self, scheduled: ScheduledMessage) -> None:
        self._write(self._schedules_dir, scheduled.id, scheduled.model_dump_json())

    def delete_schedule(self, schedule_id: str) -> None:
        self._remove(self._schedules_dir, schedule_id)

    def load_schedules(self) -> List[ScheduledMessage]:
        schedules = []
        for raw in self._read_all(self._schedules_dir):
            try:
                schedules.append(ScheduledMessage.model_validate_json(raw))
            except ValidationError as exc:
                logger.warning("schedule_snapshot_unreadable", error=str(exc))
        return schedules

    # -- maintenance --------------------------------------------------------

    def cleanup_expired(self, ttl_hours: int) -> int:
        """Remove terminal job snapshots older than the TTL. Returns count removed."""
        cutoff = utcnow() - timedelta(hours=ttl_hours)
        removed = 0
        for job in self.load_jobs():
            if job.is_terminal and job.completed_at and job.completed_at < cutoff:
                self.delete_job(job.id)
                removed += 1
        return removed

    # -- internals ----------------------------------------------------------

    def _path(self, directory: str, record_id: str) -> str:
        safe_id = os.path.basename(record_id)
        return os.path.join(directory, f"{safe_id}.json")

    def _write(self, directory: str, record_id: str, body: str) -> None:
        path = self._path(directory, record_id)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _remove(self, directory: str, record_id: str) -> None:
        path = self._path(directory, record_id)
        if os.path.exists(path):
            os.remove(path)

    def _read_all(self, directory: str) -> List[str]:
        bodies = []
        if not os.path.exists(directory):
            return bodies
        for entry in sorted(os.listdir(directory)):
            if not entry.endswith(".json"):
                continue
            with open(os.path.join(directory, entry), encoding="utf-8") as fh:
                bodies.append(fh.read())
        return bodies
