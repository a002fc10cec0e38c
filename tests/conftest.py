"""Shared fixtures: a fake transport and a fresh job queue per test."""

import asyncio
from typing import Callable, List, Optional, Tuple

import pytest

from wa_gateway.errors import SendFailed
from wa_gateway.jobs.in_process_queue import InProcessQueue
from wa_gateway.transport.base import MessageSender


class FakeSender(MessageSender):
    """Records every send; fails for targets listed in ``fail_targets``."""

    def __init__(
        self,
        fail_targets=(),
        delay: float = 0.0,
        on_send: Optional[Callable[[str, int], None]] = None,
    ):
        self.fail_targets = set(fail_targets)
        self.delay = delay
        self.on_send = on_send
        self.calls: List[Tuple[str, str, str, object]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def targets(self) -> List[str]:
        return [call[2] for call in self.calls]

    async def send_text(self, device_id, target, text):
        return await self._deliver("text", device_id, target, text)

    async def send_media(self, device_id, target, media):
        return await self._deliver("media", device_id, target, media)

    async def _deliver(self, kind, device_id, target, payload):
        self.calls.append((kind, device_id, target, payload))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_send is not None:
                self.on_send(target, len(self.calls))
            if self.delay:
                await asyncio.sleep(self.delay)
            if target in self.fail_targets:
                raise SendFailed(f"{target} is not registered on WhatsApp")
            return {"message_id": f"msg-{len(self.calls)}", "status": "sent"}
        finally:
            self.in_flight -= 1


def text_items(*targets):
    return [{"target": t, "message": f"hello {t}"} for t in targets]


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def queue(sender):
    return InProcessQueue(sender, max_batch_size=100)
