"""
Tests for the Outbound Dispatcher

Tests cover:
- Rate update fan-out to the targeted channel only (with outbound record)
- Transient 503s retried with backoff under one correlation id
- Open circuit parks events without a call or a spent attempt
- Half-open trial slot freed when the outbound record cannot be written
- Credential rejection opens the circuit and raises an alert
- Permanent 4xx and missing credentials dead-letter without retry
- No configuration / disabled channel / echo suppression
- Booking lock and rate-limit token timeouts re-enqueue for free
- Deadline already elapsed before send
"""

import base64
import json
import time
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from ota_core.errors import TransientError
from ota_core.models.integration_alert import IntegrationAlert
from ota_core.models.payload import OTAPayload
from ota_core.services.event_bus import Event


RATE = {"hotel_id": "H1", "channel": "booking_com", "room_type": "RT1", "date": "2025-03-14", "rate": 12000}


def _event(kind="rate.update", payload=None, originator="system", correlation_id="C1", attempt=1):
    return Event(
        id=f"evt-{correlation_id}-{attempt}",
        correlation_id=correlation_id,
        kind=kind,
        payload=payload or RATE,
        originator=originator,
        timestamp=datetime(2025, 3, 1, 9, 0),
        attempt_count=attempt,
    )


def _outbound(session_factory, correlation_id):
    db = session_factory()
    try:
        return (
            db.query(OTAPayload)
            .filter(OTAPayload.correlation_id == correlation_id, OTAPayload.direction == "outbound")
            .order_by(OTAPayload.attempt.asc())
            .all()
        )
    finally:
        db.close()


class TestFanOut:
    """End to end over the running bus"""

    async def test_rate_update_reaches_booking_com(self, running, add_channel, channel_server, session_factory):
        add_channel("H1", "booking_com")
        add_channel("H1", "expedia")

        await running.bus.publish("rate.update", RATE, correlation_id="C1")
        assert await running.bus.wait_idle(5)

        assert len(channel_server.requests) == 1
        request = channel_server.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://supply-xml.booking.com/hotels/ota/OTA_HotelRateAmountNotif"
        assert request.headers["authorization"] == "Basic " + base64.b64encode(b"u:p").decode()
        assert request.headers["x-correlation-id"] == "C1"
        assert json.loads(request.content)["rates"][0]["price"] == 12000

        records = _outbound(session_factory, "C1")
        assert len(records) == 1
        assert records[0].operation == "rate_update"
        assert records[0].parsed_fields["operation"] == "rate_update"
        assert records[0].processing_status == "processed"
        assert records[0].response_status == 200

    async def test_transient_failures_retried_with_backoff(self, running, add_channel, channel_server,
                                                           session_factory):
        add_channel("H1", "booking_com")
        channel_server.queue(503)
        channel_server.queue(503)
        running.dispatcher.base_delay = 0.05

        started = time.monotonic()
        await running.bus.publish("rate.update", RATE, correlation_id="C4")
        assert await running.bus.wait_idle(5)
        elapsed = time.monotonic() - started

        records = _outbound(session_factory, "C4")
        assert [r.attempt for r in records] == [1, 2, 3]
        assert [r.processing_status for r in records] == ["failed", "failed", "processed"]
        assert records[0].processing_error == "http_503"
        # 0.05 then 0.10 (plus jitter)
        assert elapsed >= 0.15
        assert running.bus.list_dead_letters() == []

    async def test_updates_channel_configuration(self, running, add_channel, session_factory, clock):
        from ota_core.models.channel_configuration import ChannelConfiguration

        config_id = add_channel("H1", "booking_com")
        await running.bus.publish("rate.update", RATE, correlation_id="C1")
        assert await running.bus.wait_idle(5)

        db = session_factory()
        try:
            config = db.get(ChannelConfiguration, config_id)
            assert config.last_sync_at == clock.now()
            assert config.error_count == 0
        finally:
            db.close()


class TestCircuitAndFailures:
    """Direct dispatch() calls"""

    async def test_open_circuit_parks_without_call(self, container, add_channel, channel_server, session_factory):
        add_channel("H1", "booking_com")
        for _ in range(5):
            container.circuits.record_failure("H1", "booking_com", "http_503")
        assert container.circuits.state("H1", "booking_com") == "open"

        ack, nack = MagicMock(), MagicMock()
        adapter = container.registry.get("booking_com")
        await container.dispatcher.dispatch(adapter, _event(), ack, nack)

        ack.assert_not_called()
        args, kwargs = nack.call_args
        assert 0 < args[0] <= 60
        assert kwargs == {"reason": "circuit_open", "consume_attempt": False}
        assert channel_server.requests == []
        assert container.rate_limits.snapshot() == {}
        assert _outbound(session_factory, "C1") == []

    async def test_half_open_probe_closes_circuit(self, container, add_channel, clock):
        add_channel("H1", "booking_com")
        for _ in range(5):
            container.circuits.record_failure("H1", "booking_com", "http_503")
        clock.advance(61)

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        ack.assert_called_once()
        assert container.circuits.state("H1", "booking_com") == "closed"

    async def test_half_open_slot_released_when_store_fails(self, container, add_channel, channel_server, clock,
                                                   monkeypatch):
        add_channel("H1", "booking_com")
        for _ in range(5):
            container.circuits.record_failure("H1", "booking_com", "http_503")
        clock.advance(61)

        original = container.store.record_outbound_request
        calls = []

        async def flaky(request, metadata):
            calls.append(metadata.event_id)
            if len(calls) == 1:
                raise TransientError("Payload store unavailable", code="payload_write_failed")
            return await original(request, metadata)

        monkeypatch.setattr(container.store, "record_outbound_request", flaky)
        adapter = container.registry.get("booking_com")

        with pytest.raises(TransientError):
            await container.dispatcher.dispatch(adapter, _event(), MagicMock(), MagicMock())
        assert channel_server.requests == []

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(adapter, _event(attempt=2), ack, nack)

        nack.assert_not_called()
        ack.assert_called_once()
        assert len(channel_server.requests) == 1
        assert container.circuits.state("H1", "booking_com") == "closed"

    async def test_auth_failure_opens_circuit(self, container, add_channel, channel_server, session_factory):
        add_channel("H1", "booking_com")
        channel_server.queue(401, {"message": "bad credentials"})

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        nack.assert_called_once_with(reason="http_401", give_up=True)
        assert container.circuits.state("H1", "booking_com") == "open"

        db = session_factory()
        try:
            types = {a.alert_type for a in db.query(IntegrationAlert).all()}
        finally:
            db.close()
        assert {"auth_failure", "circuit_open"} <= types

    async def test_permanent_rejection_not_retried(self, container, add_channel, channel_server, session_factory):
        add_channel("H1", "booking_com")
        channel_server.queue(400, {"error": "unknown room"})

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        nack.assert_called_once_with(reason="http_400", give_up=True)
        assert container.circuits.state("H1", "booking_com") == "closed"
        record = _outbound(session_factory, "C1")[0]
        assert record.processing_status == "failed"
        assert record.response_status == 400

    async def test_envelope_error_in_2xx(self, container, add_channel, channel_server):
        add_channel("H1", "booking_com")
        channel_server.queue(200, {"errors": [{"code": "SYSTEM_BUSY"}]})

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        ack.assert_not_called()
        assert nack.call_args.kwargs == {"reason": "SYSTEM_BUSY"}

    async def test_missing_credentials(self, container, add_channel, channel_server):
        add_channel("H1", "booking_com", credentials={})

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        nack.assert_called_once_with(reason="credentials_missing", give_up=True)
        assert channel_server.requests == []

    async def test_deadline_elapsed_before_send(self, container, add_channel, channel_server, session_factory, clock):
        add_channel("H1", "booking_com")
        event = _event()
        event.deadline_at = clock.monotonic() - 1

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), event, ack, nack)

        nack.assert_called_once_with(reason="deadline_exceeded", give_up=True)
        assert channel_server.requests == []
        assert _outbound(session_factory, "C1")[0].processing_error == "deadline_exceeded"


class TestSkipsAndTimeouts:
    """Events the dispatcher acks or re-enqueues without sending"""

    async def test_no_configuration(self, container, channel_server):
        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        ack.assert_called_once()
        nack.assert_not_called()
        assert channel_server.requests == []

    async def test_disabled_channel(self, container, add_channel, channel_server):
        add_channel("H1", "booking_com", enabled=False)
        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), _event(), ack, nack)

        ack.assert_called_once()
        assert channel_server.requests == []

    async def test_no_echo_to_originating_channel(self, container, add_channel, channel_server):
        add_channel("H1", "expedia")
        booking = {
            "hotel_id": "H1", "booking_id": "B-7", "check_in": "2025-03-31", "check_out": "2025-04-02",
        }
        event = _event("booking.modified", booking, originator="channel:expedia")

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("expedia"), event, ack, nack)

        ack.assert_called_once()
        assert channel_server.requests == []

    async def test_notify_channels_false(self, container, add_channel, channel_server):
        add_channel("H1", "booking_com")
        event = _event(payload={**RATE, "notify_channels": False})

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(container.registry.get("booking_com"), event, ack, nack)

        ack.assert_called_once()
        assert channel_server.requests == []

    async def test_booking_lock_timeout(self, container, add_channel, channel_server):
        add_channel("H1", "expedia")
        container.dispatcher.lock_timeout = 0.01
        event = _event("booking.modified", {"hotel_id": "H1", "booking_id": "B-1", "status": "modified"})

        ack, nack = MagicMock(), MagicMock()
        async with container.locks.hold("booking:B-1", 1):
            await container.dispatcher.dispatch(container.registry.get("expedia"), event, ack, nack)

        nack.assert_called_once_with(container.dispatcher.base_delay, reason="booking_locked", consume_attempt=False)
        assert channel_server.requests == []

    async def test_rate_limit_token_timeout(self, container, add_channel, channel_server):
        add_channel("H1", "booking_com", requests_per_second=1.0, burst=1)
        container.dispatcher.acquire_timeout = 0
        adapter = container.registry.get("booking_com")

        first_ack, first_nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(adapter, _event(correlation_id="R1"), first_ack, first_nack)
        first_ack.assert_called_once()

        ack, nack = MagicMock(), MagicMock()
        await container.dispatcher.dispatch(adapter, _event(correlation_id="R2"), ack, nack)
        nack.assert_called_once_with(1.0, reason="rate_limit_timeout", consume_attempt=False)
        assert len(channel_server.requests) == 1


class TestBackoff:
    """Delay schedule"""

    @pytest.mark.parametrize("attempt,low,high", [(1, 2.0, 2.5), (2, 4.0, 5.0), (3, 8.0, 10.0)])
    def test_exponential_with_jitter(self, container, attempt, low, high):
        container.dispatcher.base_delay = 2.0
        assert low <= container.dispatcher.backoff_delay(attempt) <= high

    def test_capped(self, container):
        container.dispatcher.base_delay = 2.0
        container.dispatcher.max_delay = 300.0
        assert container.dispatcher.backoff_delay(20) == 300.0
