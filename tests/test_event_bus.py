"""
Tests for the Event Bus

Tests cover:
- Publish persists and delivers to matching subscriptions
- Payload validation before anything is persisted
- Retry with nack(delay) and dead-lettering after max attempts
- Permanent failure (give_up) and dead-letter replay
- Per-correlation FIFO across partitions
- Back-pressure above the partition high-water mark
- Deadline elapsed while queued
- Recovery of pending deliveries on restart
- Idle after stop even with deliveries cut short
"""

import asyncio

import pytest

from ota_core.errors import NotFoundError, TransientError, ValidationError
from ota_core.models.bus import BusDelivery, BusEvent, DeadLetterEvent
from ota_core.services.event_bus import EventBus


RATE = {"hotel_id": "H1", "room_type": "RT1", "date": "2025-03-14", "rate": 120}


@pytest.fixture
def bus(session_factory, clock, ids):
    return EventBus(session_factory, clock, ids, default_retry_delay=0.01)


@pytest.fixture
async def started(bus):
    yield bus
    await bus.stop(grace=1.0)


class TestPublish:
    """publish() validates, persists and fans out"""

    async def test_publish_delivers_and_acks(self, started, session_factory):
        seen = []

        async def handler(event, ack, nack):
            seen.append(event)
            ack()

        started.subscribe("rate.*", handler, name="rates")
        await started.start()
        event_id = await started.publish("rate.update", RATE, correlation_id="C1")

        assert await started.wait_idle(2)
        assert [e.id for e in seen] == [event_id]
        assert seen[0].correlation_id == "C1"
        assert seen[0].data.rate == 120

        db = session_factory()
        try:
            # acked deliveries leave nothing behind in the bus log
            assert db.query(BusDelivery).count() == 0
            assert db.query(BusEvent).count() == 0
        finally:
            db.close()

    async def test_only_matching_subscriptions_receive(self, started):
        rates, bookings = [], []

        async def on_rate(event, ack, nack):
            rates.append(event.kind)
            ack()

        async def on_booking(event, ack, nack):
            bookings.append(event.kind)
            ack()

        started.subscribe("rate.update", on_rate, name="r")
        started.subscribe("booking.*", on_booking, name="b")
        await started.start()
        await started.publish("rate.update", RATE)

        assert await started.wait_idle(2)
        assert rates == ["rate.update"]
        assert bookings == []

    async def test_invalid_payload_rejected_before_persist(self, bus, session_factory):
        bus.subscribe("rate.update", lambda *a: None, name="r")

        with pytest.raises(ValidationError) as exc:
            await bus.publish("rate.update", {"hotel_id": "H1", "room_type": "RT1", "rate": 0})
        assert "rate" in exc.value.details["fields"]

        db = session_factory()
        try:
            assert db.query(BusEvent).count() == 0
        finally:
            db.close()

    async def test_unknown_kind(self, bus):
        with pytest.raises(ValidationError) as exc:
            await bus.publish("folio.closed", {"hotel_id": "H1"})
        assert exc.value.code == "unknown_event_kind"

    async def test_duplicate_subscription_name(self, bus):
        async def handler(event, ack, nack):
            ack()

        bus.subscribe("rate.update", handler, name="dup")
        with pytest.raises(ValueError):
            bus.subscribe("rate.update", handler, name="dup")

    async def test_listeners_see_published_events(self, bus):
        seen = []
        bus.add_listener(seen.append)
        await bus.publish("rate.update", RATE, correlation_id="C9")
        assert seen[0].correlation_id == "C9"
        assert seen[0].hotel_id == "H1"


class TestRetryAndDeadLetter:
    """nack semantics and the dead-letter store"""

    async def test_nack_retries_then_acks(self, started):
        attempts = []

        async def flaky(event, ack, nack):
            attempts.append(event.attempt_count)
            if len(attempts) < 3:
                nack(0.01, reason="http_503")
            else:
                ack()

        started.subscribe("rate.update", flaky, name="flaky")
        await started.start()
        await started.publish("rate.update", RATE)

        assert await started.wait_idle(2)
        assert attempts == [1, 2, 3]
        assert started.list_dead_letters() == []

    async def test_dead_letter_after_max_attempts(self, started):
        dead = []

        async def failing(event, ack, nack):
            nack(0.01, reason="http_500")

        started.subscribe("rate.update", failing, name="failing", max_attempts=3)
        started.add_dead_letter_listener(lambda sub, event: dead.append((sub, event.id)))
        await started.start()
        event_id = await started.publish("rate.update", RATE, correlation_id="C2")

        assert await started.wait_idle(2)
        entries = started.list_dead_letters(correlation_id="C2")
        assert len(entries) == 1
        assert entries[0].reason == "max_attempts_exceeded"
        assert entries[0].attempts == 3
        assert entries[0].last_error == "http_500"
        assert dead == [("failing", event_id)]

    async def test_give_up_dead_letters_immediately(self, started):
        calls = []

        async def permanent(event, ack, nack):
            calls.append(event.id)
            nack(reason="http_400", give_up=True)

        started.subscribe("rate.update", permanent, name="perm")
        await started.start()
        await started.publish("rate.update", RATE)

        assert await started.wait_idle(2)
        assert len(calls) == 1
        assert started.list_dead_letters()[0].reason == "permanent_failure"

    async def test_handler_exception_counts_as_nack(self, started):
        calls = []

        async def broken(event, ack, nack):
            calls.append(1)
            raise KeyError("boom")

        started.subscribe("rate.update", broken, name="broken", max_attempts=2)
        await started.start()
        await started.publish("rate.update", RATE)

        assert await started.wait_idle(2)
        assert len(calls) == 2
        assert started.list_dead_letters()[0].last_error == "handler_error: KeyError"

    async def test_attempt_not_consumed(self, started):
        calls = []

        async def parked(event, ack, nack):
            calls.append(event.attempt_count)
            if len(calls) < 4:
                nack(0.01, reason="circuit_open", consume_attempt=False)
            else:
                ack()

        # 4 deliveries against max 2 attempts: parked retries are free
        started.subscribe("rate.update", parked, name="parked", max_attempts=2)
        await started.start()
        await started.publish("rate.update", RATE)

        assert await started.wait_idle(2)
        assert calls == [1, 1, 1, 1]
        assert started.list_dead_letters() == []

    async def test_replay_dead_letter(self, started):
        outcomes = ["fail", "ok"]
        seen = []

        async def handler(event, ack, nack):
            seen.append(event.correlation_id)
            if outcomes.pop(0) == "fail":
                nack(reason="credentials_missing", give_up=True)
            else:
                ack()

        started.subscribe("rate.update", handler, name="h")
        await started.start()
        await started.publish("rate.update", RATE, correlation_id="C3")
        assert await started.wait_idle(2)

        entry = started.list_dead_letters()[0]
        new_event_id = await started.replay_dead_letter(entry.id)
        assert await started.wait_idle(2)

        assert seen == ["C3", "C3"]
        replayed = started.list_dead_letters()[0]
        assert replayed.replayed_event_id == new_event_id
        assert replayed.replayed_at is not None

    async def test_replay_unknown_dead_letter(self, bus):
        with pytest.raises(NotFoundError):
            await bus.replay_dead_letter("missing")

    async def test_dead_letter_raises_alert(self, session_factory, clock, ids):
        from ota_core.models.integration_alert import IntegrationAlert
        from ota_core.services.alerts import AlertService

        bus = EventBus(session_factory, clock, ids, alerts=AlertService(session_factory, clock))

        async def permanent(event, ack, nack):
            nack(reason="http_422", give_up=True)

        bus.subscribe("rate.update", permanent, name="perm")
        await bus.start()
        try:
            await bus.publish("rate.update", RATE)
            assert await bus.wait_idle(2)
        finally:
            await bus.stop(grace=1.0)

        db = session_factory()
        try:
            alert = db.query(IntegrationAlert).one()
            assert alert.alert_type == "dead_letter"
            assert alert.details["dead_letter_id"] == db.query(DeadLetterEvent).one().id
        finally:
            db.close()


class TestOrderingAndBackpressure:
    """Partitioning, FIFO and high-water"""

    async def test_fifo_per_correlation(self, started):
        order = []

        async def handler(event, ack, nack):
            await asyncio.sleep(0)
            order.append((event.correlation_id, event.data.rate))
            ack()

        started.subscribe("rate.update", handler, name="ordered", concurrency=3)
        await started.start()
        for rate in range(1, 6):
            for correlation in ("A", "B"):
                await started.publish("rate.update", {**RATE, "rate": rate}, correlation_id=correlation)

        assert await started.wait_idle(2)
        assert [r for c, r in order if c == "A"] == [1, 2, 3, 4, 5]
        assert [r for c, r in order if c == "B"] == [1, 2, 3, 4, 5]

    async def test_retry_keeps_order(self, started):
        order = []
        failed_once = set()

        async def handler(event, ack, nack):
            rate = event.data.rate
            if rate == 1 and rate not in failed_once:
                failed_once.add(rate)
                nack(0.02, reason="http_503")
                return
            order.append(rate)
            ack()

        started.subscribe("rate.update", handler, name="ordered")
        await started.start()
        await started.publish("rate.update", {**RATE, "rate": 1}, correlation_id="A")
        await started.publish("rate.update", {**RATE, "rate": 2}, correlation_id="A")

        assert await started.wait_idle(2)
        assert order == [1, 2]

    async def test_backpressure(self, session_factory, clock, ids):
        bus = EventBus(session_factory, clock, ids, high_water=2)

        async def handler(event, ack, nack):
            ack()

        bus.subscribe("rate.update", handler, name="r")
        # Not started: deliveries stay queued
        await bus.publish("rate.update", RATE, correlation_id="A")
        await bus.publish("rate.update", RATE, correlation_id="A")

        with pytest.raises(TransientError) as exc:
            await bus.publish("rate.update", RATE, correlation_id="A")
        assert exc.value.code == "bus_backpressure"
        assert bus.queue_depth("r") == 2


class TestDeadlinesAndRecovery:
    """Deadlines and restart recovery"""

    async def test_deadline_elapsed_while_queued(self, bus, clock):
        calls = []

        async def handler(event, ack, nack):
            calls.append(event.id)
            ack()

        bus.subscribe("rate.update", handler, name="r")
        await bus.publish("rate.update", RATE, deadline_seconds=5)
        clock.advance(10)

        await bus.start()
        try:
            assert await bus.wait_idle(2)
        finally:
            await bus.stop(grace=1.0)

        assert calls == []
        assert bus.list_dead_letters()[0].reason == "deadline_exceeded"

    async def test_pending_deliveries_recovered_on_start(self, session_factory, clock, ids):
        first = EventBus(session_factory, clock, ids)

        async def never(event, ack, nack):
            ack()

        first.subscribe("rate.update", never, name="r")
        await first.publish("rate.update", RATE, correlation_id="C7")

        # A fresh bus over the same log picks up what the first never delivered
        seen = []

        async def handler(event, ack, nack):
            seen.append(event.correlation_id)
            ack()

        second = EventBus(session_factory, clock, ids)
        second.subscribe("rate.update", handler, name="r")
        await second.start()
        try:
            assert await second.wait_idle(2)
        finally:
            await second.stop(grace=1.0)

        assert seen == ["C7"]

    async def test_stop_leaves_bus_idle(self, bus):
        entered = asyncio.Event()

        async def stuck(event, ack, nack):
            entered.set()
            await asyncio.sleep(30)

        bus.subscribe("rate.update", stuck, name="r")
        await bus.start()
        await bus.publish("rate.update", RATE, correlation_id="C8")
        await bus.publish("rate.update", RATE, correlation_id="C8")
        await asyncio.wait_for(entered.wait(), 2)
        assert not await bus.wait_idle(0.05)

        await bus.stop(grace=0.1)

        # the unfinished deliveries stay in the bus log, but nothing is in flight any more
        assert await bus.wait_idle(0.1)
        assert bus.queue_depth() == 0
