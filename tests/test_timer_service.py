"""Tests for the scheduled message timer service."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeSender
from wa_gateway.errors import InvalidSchedule, ScheduleNotFound, ValidationFailed
from wa_gateway.scheduler.models import ScheduledMessage
from wa_gateway.scheduler.timer_service import ScheduledMessageService
from wa_gateway.storage.state_store import StateStore


def in_seconds(seconds):
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class ReadOnlyStore(StateStore):
    def save_schedule(self, scheduled):
        raise OSError("read-only file system")


@pytest.fixture
def service(sender):
    return ScheduledMessageService(sender)


class TestSchedule:
    def test_past_time_rejected(self, service, sender):
        with pytest.raises(InvalidSchedule):
            service.schedule("dev", "628111", "hi", in_seconds(-5))
        assert service.list() == []
        assert sender.calls == []

    def test_now_is_not_future(self, service):
        with pytest.raises(InvalidSchedule):
            service.schedule("dev", "628111", "hi", datetime.now(timezone.utc))

    def test_naive_datetime_treated_as_utc(self, service):
        naive_past = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=1)
        with pytest.raises(InvalidSchedule):
            service.schedule("dev", "628111", "hi", naive_past)

    def test_requires_target_and_message(self, service):
        with pytest.raises(ValidationFailed):
            service.schedule("dev", "628111", "", in_seconds(10))

    def test_list_filters_and_sorts(self, service):
        later = service.schedule("dev-1", "A", "later", in_seconds(60))
        sooner = service.schedule("dev-1", "B", "sooner", in_seconds(30))
        other = service.schedule("dev-2", "C", "other", in_seconds(10))

        assert [s.id for s in service.list()] == [other, sooner, later]
        assert [s.id for s in service.list("dev-1")] == [sooner, later]
        assert service.get(other).timezone == "Asia/Jakarta"

    def test_cancel_unknown(self, service):
        assert service.cancel("sched_missing") is False

    def test_require_unknown_raises(self, service):
        with pytest.raises(ScheduleNotFound):
            service.require("sched_missing")

    @pytest.mark.asyncio
    async def test_unsaved_schedule_is_not_armed(self, tmp_path, sender):
        service = ScheduledMessageService(sender, store=ReadOnlyStore(str(tmp_path)))
        await service.start()
        try:
            with pytest.raises(OSError):
                service.schedule("dev", "X", "hi", in_seconds(0.05))
            assert service.list() == []
            await asyncio.sleep(0.2)
        finally:
            await service.stop()

        assert sender.calls == []


class TestFiring:
    @pytest.mark.asyncio
    async def test_fires_once_and_disappears(self, service, sender):
        await service.start()
        try:
            schedule_id = service.schedule("dev", "628111", "hi", in_seconds(0.1))
            await asyncio.sleep(0.35)
        finally:
            await service.stop()

        assert sender.calls == [("text", "dev", "628111", "hi")]
        assert service.list() == []
        assert service.get(schedule_id) is None
        assert service.cancel(schedule_id) is False

    @pytest.mark.asyncio
    async def test_cancel_before_fire(self, service, sender):
        await service.start()
        try:
            schedule_id = service.schedule("dev", "628111", "hi", in_seconds(0.5))
            await asyncio.sleep(0.2)
            assert service.cancel(schedule_id) is True
            await asyncio.sleep(0.5)
        finally:
            await service.stop()

        assert sender.calls == []
        assert service.list() == []

    @pytest.mark.asyncio
    async def test_failed_send_still_removed(self):
        sender = FakeSender(fail_targets={"628111"})
        service = ScheduledMessageService(sender)
        await service.start()
        try:
            service.schedule("dev", "628111", "hi", in_seconds(0.05))
            await asyncio.sleep(0.3)
        finally:
            await service.stop()

        assert len(sender.calls) == 1
        assert service.list() == []

    @pytest.mark.asyncio
    async def test_earlier_schedule_preempts_sleep(self, service, sender):
        await service.start()
        try:
            late = service.schedule("dev", "LATE", "late", in_seconds(5))
            service.schedule("dev", "EARLY", "early", in_seconds(0.1))
            await asyncio.sleep(0.4)
        finally:
            await service.stop()

        assert sender.targets == ["EARLY"]
        assert [s.id for s in service.list()] == [late]

    @pytest.mark.asyncio
    async def test_many_schedules_fire_in_order(self, service, sender):
        await service.start()
        try:
            for i in (3, 1, 2):
                service.schedule("dev", f"T{i}", "x", in_seconds(0.05 * i))
            await asyncio.sleep(0.5)
        finally:
            await service.stop()

        assert sender.targets == ["T1", "T2", "T3"]

    @pytest.mark.asyncio
    async def test_stop_does_not_wait_for_stalled_send(self):
        sender = FakeSender(delay=30)
        service = ScheduledMessageService(sender, shutdown_timeout=0.1)
        await service.start()
        service.schedule("dev", "SLOW", "hi", in_seconds(0.05))
        await asyncio.sleep(0.2)
        assert sender.in_flight == 1

        await asyncio.wait_for(service.stop(), timeout=2)

        assert sender.in_flight == 0
        assert sender.targets == ["SLOW"]


class TestRestore:
    @pytest.mark.asyncio
    async def test_rearms_future_and_drops_stale(self, tmp_path, sender):
        store = StateStore(str(tmp_path))
        future = ScheduledMessage(
            device_id="dev", target="FUTURE", message="hi", fire_at=in_seconds(60)
        )
        stale = ScheduledMessage(
            device_id="dev", target="STALE", message="hi", fire_at=in_seconds(-60)
        )
        store.save_schedule(future)
        store.save_schedule(stale)

        service = ScheduledMessageService(sender, store=store)
        await service.start()
        try:
            armed = service.list()
        finally:
            await service.stop()

        assert [s.id for s in armed] == [future.id]
        assert [s.id for s in store.load_schedules()] == [future.id]
        assert sender.calls == []

    @pytest.mark.asyncio
    async def test_persists_and_forgets(self, tmp_path, sender):
        store = StateStore(str(tmp_path))
        service = ScheduledMessageService(sender, store=store)

        kept = service.schedule("dev", "A", "hi", in_seconds(60))
        dropped = service.schedule("dev", "B", "hi", in_seconds(60))
        service.cancel(dropped)

        assert [s.id for s in store.load_schedules()] == [kept]
