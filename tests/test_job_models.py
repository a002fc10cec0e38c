"""Tests for job records and the lifecycle state machine."""

import pytest
from pydantic import ValidationError

from wa_gateway.errors import InvalidTransition
from wa_gateway.jobs.models import (
    ItemOutcome,
    JobItem,
    JobRecord,
    JobStatus,
    JobType,
    MediaPayload,
    MediaType,
)


def make_job(n=3, status=JobStatus.QUEUED):
    return JobRecord(
        type=JobType.SEND_TEXT,
        device_id="device-1",
        status=status,
        items=[JobItem(target=f"62811{i:04d}", message="hi") for i in range(n)],
    )


class TestJobRecord:
    def test_total_matches_items(self):
        job = make_job(5)
        assert job.progress.total == 5
        assert job.cursor == 0
        assert job.status == JobStatus.QUEUED
        assert job.started_at is None
        assert job.completed_at is None

    def test_ids_are_unique(self):
        assert make_job().id != make_job().id

    def test_record_success_and_failure_advance_cursor(self):
        job = make_job(3)
        job.transition(JobStatus.PROCESSING)
        job.record_success({"message_id": "m1"})
        job.record_failure("not on WhatsApp")

        assert job.cursor == 2
        assert job.progress.completed == 1
        assert job.progress.failed == 1
        assert job.cursor == job.progress.completed + job.progress.failed
        assert [r.outcome for r in job.results] == [ItemOutcome.SUCCESS, ItemOutcome.ERROR]
        assert job.results[1].index == 1
        assert job.results[1].detail == "not on WhatsApp"
        assert job.remaining == 1

    def test_failed_items_returns_original_payloads(self):
        job = make_job(3)
        job.transition(JobStatus.PROCESSING)
        job.record_failure("boom")
        job.record_success({})
        job.record_failure("boom")

        failed = job.failed_items()
        assert [i.target for i in failed] == [job.items[0].target, job.items[2].target]
        failed[0].message = "changed"
        assert job.items[0].message == "hi"

    def test_snapshot_is_detached(self):
        job = make_job(2)
        snap = job.snapshot()
        snap.items[0].target = "other"
        assert job.items[0].target != "other"


class TestStateMachine:
    def test_started_at_set_once(self):
        job = make_job()
        job.transition(JobStatus.PROCESSING)
        first = job.started_at
        job.transition(JobStatus.PAUSED)
        job.transition(JobStatus.PROCESSING)
        assert job.started_at == first
        assert job.completed_at is None

    def test_finish_without_failures_completes(self):
        job = make_job(1)
        job.transition(JobStatus.PROCESSING)
        job.record_success({})
        job.finish()
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None

    def test_finish_with_failures_fails(self):
        job = make_job(1)
        job.transition(JobStatus.PROCESSING)
        job.record_failure("x")
        job.finish()
        assert job.status == JobStatus.FAILED
        assert job.error is None

    @pytest.mark.parametrize(
        "terminal", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]
    )
    def test_terminal_states_do_not_transition(self, terminal):
        job = make_job(status=terminal)
        assert job.is_terminal
        for target in JobStatus:
            assert not job.can_transition(target)
        with pytest.raises(InvalidTransition):
            job.transition(JobStatus.PROCESSING)

    def test_queued_cannot_pause(self):
        job = make_job()
        with pytest.raises(InvalidTransition):
            job.transition(JobStatus.PAUSED)

    def test_paused_can_cancel(self):
        job = make_job(status=JobStatus.PAUSED)
        job.transition(JobStatus.CANCELLED)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None

    def test_fail_fatally_sets_error(self):
        job = make_job()
        job.transition(JobStatus.PROCESSING)
        job.fail_fatally("RuntimeError: bug")
        assert job.status == JobStatus.FAILED
        assert job.error == "RuntimeError: bug"
        assert job.completed_at is not None


class TestMediaPayload:
    def test_requires_base64_or_url(self):
        with pytest.raises(ValidationError):
            MediaPayload(media_type=MediaType.IMAGE)

    def test_default_mimetypes(self):
        assert MediaPayload(media_type="image", url="http://x").resolved_mimetype() == "image/jpeg"
        assert MediaPayload(media_type="video", url="http://x").resolved_mimetype() == "video/mp4"
        assert (
            MediaPayload(media_type="document", url="http://x").resolved_mimetype()
            == "application/pdf"
        )

    def test_explicit_mimetype_wins(self):
        media = MediaPayload(media_type="image", url="http://x", mimetype="image/png")
        assert media.resolved_mimetype() == "image/png"

    def test_strips_data_url_prefix(self):
        media = MediaPayload(media_type="image", base64="data:image/png;base64,QUJD")
        assert media.raw_base64() == "QUJD"
        assert MediaPayload(media_type="image", base64="QUJD").raw_base64() == "QUJD"
