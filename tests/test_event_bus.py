"""Tests for the in-process event bus."""

import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from gateway.models import Event, EventKind, ServiceType
from gateway.services.event_bus import EventBus, verify_exhaustive


def make_event(kind=EventKind.GITHUB_PUSH, external_id="delivery-1"):
    return Event(kind=kind, service=ServiceType.GITHUB, event_type="push", external_id=external_id)


@pytest_asyncio.fixture
async def bus() -> AsyncGenerator[EventBus, None]:
    event_bus = EventBus(workers=2, max_attempts=3, retry_delay=0.01)
    await event_bus.start()
    yield event_bus
    await event_bus.stop(timeout=5)


class TestPublish:
    """Fan-out to subscribers."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_event(self, bus):
        first, second = [], []

        async def on_first(event):
            first.append(event.external_id)

        async def on_second(event):
            second.append(event.external_id)

        bus.subscribe(EventKind.GITHUB_PUSH, on_first)
        bus.subscribe(EventKind.GITHUB_PUSH, on_second)

        assert bus.publish(make_event()) == 2
        await bus.drain()

        assert first == ["delivery-1"]
        assert second == ["delivery-1"]
        assert bus.stats["delivered"] == 2

    @pytest.mark.asyncio
    async def test_other_kinds_are_not_delivered(self, bus):
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(EventKind.SLACK_MESSAGE, handler)

        assert bus.publish(make_event()) == 0
        await bus.drain()
        assert received == []

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_handlers(self, bus):
        release = asyncio.Event()
        finished = []

        async def slow(event):
            await release.wait()
            finished.append(event.id)

        bus.subscribe(EventKind.GITHUB_PUSH, slow)
        bus.publish(make_event())

        assert finished == []
        release.set()
        await bus.drain()
        assert len(finished) == 1


class TestRetries:
    """Failing handlers are retried, then dead-lettered."""

    @pytest.mark.asyncio
    async def test_handler_succeeds_on_retry(self, bus):
        attempts = []

        async def flaky(event):
            attempts.append(event.id)
            if len(attempts) < 3:
                raise RuntimeError("not yet")

        bus.subscribe(EventKind.GITHUB_PUSH, flaky, name="flaky")
        bus.publish(make_event())
        await bus.drain()

        assert len(attempts) == 3
        assert bus.stats["retried"] == 2
        assert bus.stats["delivered"] == 1
        assert list(bus.dead_letters) == []

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self, bus):
        healthy = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            healthy.append(event.id)

        bus.subscribe(EventKind.GITHUB_PUSH, broken, name="broken")
        bus.subscribe(EventKind.GITHUB_PUSH, working, name="working")
        event = make_event()
        bus.publish(event)
        await bus.drain()

        assert healthy == [event.id]
        assert len(bus.dead_letters) == 1
        dead = bus.dead_letters[0]
        assert dead["subscriber"] == "broken"
        assert dead["attempts"] == 3
        assert dead["event_id"] == event.id
        assert "boom" in dead["error"]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_drains_queued_deliveries(self):
        bus = EventBus(workers=1, retry_delay=0.01)
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.external_id)

        bus.subscribe(EventKind.GITHUB_PUSH, handler)
        await bus.start()
        for i in range(5):
            bus.publish(make_event(external_id=f"d-{i}"))
        await bus.stop(timeout=5)

        assert received == [f"d-{i}" for i in range(5)]
        assert not bus.running


class TestExhaustiveHandlers:

    def test_missing_kind_is_rejected(self):
        table = {kind: None for kind in EventKind if kind != EventKind.SLACK_CHANNEL}
        with pytest.raises(TypeError, match="slack.channel"):
            verify_exhaustive(table, "Subscriber")

    def test_complete_table_passes(self):
        verify_exhaustive({kind: None for kind in EventKind}, "Subscriber")
