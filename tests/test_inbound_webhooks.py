"""
Tests for the inbound webhook pipeline

Tests cover:
- Date-change amendment auto-approved end to end (no echo, decision sent back)
- Large date shift queued for review, then rejected by a reviewer
- Duplicate deliveries return the original correlation id
- Concurrent duplicates and retries after a bus failure route exactly once
- Signature failures stored as ignored, alerted and refused
- Invalid JSON and unrouted operations
- Domain events (rate updates) routed with the channel as originator
- HTTP status codes: 200 / 401 / 404 / 413
"""

import asyncio
import json
from datetime import date

import pytest

from conftest import SECRETS
from ota_core.errors import AuthError, NotFoundError, PayloadTooLarge, TransientError, ValidationError
from ota_core.models.integration_alert import IntegrationAlert
from ota_core.models.payload import BusinessOperation, OTAPayload
from ota_core.services.booking_snapshot import BookingSnapshot
from ota_core.services.inbound_pipeline import classify_operation
from ota_core.services.payload_store import PayloadMetadata, WireRequest
from ota_core.utils.security import compute_signature

SIGNATURE_HEADERS = {
    "booking_com": "X-Booking-Signature",
    "expedia": "X-Expedia-Signature",
    "airbnb": "X-Airbnb-Signature",
    "agoda": "X-Agoda-Signature",
}


def _wire(channel, body, secret=None, signature=None, headers=None):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    all_headers = {"Content-Type": "application/json"}
    header_name = SIGNATURE_HEADERS.get(channel, "X-Signature")
    if signature is None and secret is not None:
        signature = compute_signature(raw, secret)
    if signature is not None:
        all_headers[header_name] = signature
    all_headers.update(headers or {})
    return WireRequest(
        method="POST",
        url=f"https://pms.example.com/webhooks/channels/{channel}",
        headers=all_headers,
        body=raw,
        path=f"/webhooks/channels/{channel}",
    )


def _booking(**overrides):
    values = dict(
        booking_id="B-7",
        hotel_id="H1",
        status="confirmed",
        check_in=date(2025, 3, 30),
        check_out=date(2025, 4, 1),
        room_type="DLX",
        guest_name="Sara Nasser",
        total_amount=400.0,
        currency="USD",
        channel="expedia",
        channel_reservation_id="EXP-9001",
    )
    values.update(overrides)
    return BookingSnapshot(**values)


MODIFICATION = {
    "event": "booking.modified",
    "hotel_id": "H1",
    "booking_id": "B-7",
    "reservation_id": "EXP-9001",
    "amendment_id": "AM-1",
    "new_check_in": "2025-03-31",
    "new_check_out": "2025-04-02",
}

RATE_BODY = {"event": "rate.update", "hotel_id": "H1", "room_type": "RT1", "date": "2025-03-14", "rate": 99}


@pytest.fixture
def published(container):
    events = []
    container.bus.add_listener(events.append)
    return events


class TestAmendmentFlow:
    """Amendments arriving through the webhook"""

    async def test_small_date_change_auto_approved(self, running, add_channel, snapshots, channel_server,
                                                   published, db):
        add_channel("H1", "expedia")
        snapshots.put(_booking())
        running.dispatcher.base_delay = 0.01

        result = await running.inbound.handle("expedia", _wire("expedia", MODIFICATION, SECRETS["expedia"]))
        assert result.event_kind == "amendment.received"
        assert await running.bus.wait_idle(5)

        items, total = running.amendments.list_amendments(db)
        assert total == 1
        amendment = items[0]
        assert amendment.state == "auto_approved"
        assert amendment.correlation_id == result.correlation_id
        assert amendment.requested_changes == {"checkIn": "2025-03-31", "checkOut": "2025-04-02"}

        modified = [e for e in published if e.kind == "booking.modified"]
        assert len(modified) == 1
        assert modified[0].data.check_in == date(2025, 3, 31)
        assert modified[0].originator == "channel:expedia"

        transitions = running.amendments.booking_transitions(db, "B-7")
        assert [(t.from_status, t.to_status) for t in transitions] == [("confirmed", "modified")]

        # only the decision goes back to Expedia; the booking change is not echoed
        assert channel_server.paths() == ["/properties/H1/reservations/EXP-9001/changeRequests/AM-1"]
        assert json.loads(channel_server.requests[0].content)["decision"] == "ACCEPT"

    async def test_large_shift_queued_then_rejected(self, running, add_channel, snapshots, channel_server,
                                                    published, db):
        add_channel("H1", "expedia")
        snapshots.put(_booking())
        running.dispatcher.base_delay = 0.01
        body = {**MODIFICATION, "amendment_id": "AM-2", "new_check_in": "2025-04-29", "new_check_out": "2025-05-01"}

        await running.inbound.handle("expedia", _wire("expedia", body, SECRETS["expedia"]))
        assert await running.bus.wait_idle(5)

        amendment = running.amendments.list_amendments(db)[0][0]
        assert amendment.state == "pending"
        assert amendment.requires_manual_approval is True
        assert "date_shift_exceeds_policy" in amendment.manual_approval_reasons
        assert channel_server.requests == []

        view = await running.amendments.decide(amendment.amendment_id, "reject", actor="u1", reason="outside policy")
        assert await running.bus.wait_idle(5)

        assert view["state"] == "rejected"
        assert view["decisionReason"] == {"rule": "manual_rejection", "message": "outside policy"}
        assert [e for e in published if e.kind.startswith("booking.")] == []
        assert json.loads(channel_server.requests[0].content) == {
            "decision": "REJECT", "state": "rejected", "reason": "outside policy",
        }


class TestDedupAndAuth:
    """Idempotent intake and signature checks"""

    async def test_duplicate_returns_original_correlation(self, container, add_channel, db):
        add_channel("H1", "expedia")
        body = {**MODIFICATION, "event_id": "evt-42"}

        first = await container.inbound.handle("expedia", _wire("expedia", body, SECRETS["expedia"]))
        second = await container.inbound.handle("expedia", _wire("expedia", body, SECRETS["expedia"]))

        assert not first.duplicate
        assert second.duplicate
        assert second.correlation_id == first.correlation_id
        assert second.payload_id == first.payload_id
        assert db.query(OTAPayload).count() == 1

    async def test_duplicate_by_body_hash(self, container, published):
        body = {"event": "rate.update", "hotel_id": "H1", "room_type": "RT1", "date": "2025-03-14", "rate": 99}
        await container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"]))
        again = await container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"]))

        assert again.duplicate
        assert len([e for e in published if e.kind == "rate.update"]) == 1

    async def test_concurrent_deliveries_publish_once(self, container, published, monkeypatch, db):
        original = container.bus.publish

        async def slow_publish(*args, **kwargs):
            await asyncio.sleep(0.05)
            return await original(*args, **kwargs)

        monkeypatch.setattr(container.bus, "publish", slow_publish)
        body = {**RATE_BODY, "event_id": "evt-77"}

        results = await asyncio.gather(
            container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"])),
            container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"])),
        )

        assert sorted(r.duplicate for r in results) == [False, True]
        assert results[0].correlation_id == results[1].correlation_id
        assert [e.kind for e in published] == ["rate.update"]
        assert db.query(OTAPayload).one().processing_status == "processed"

    async def test_retry_after_bus_failure_routes_again(self, container, published, monkeypatch, db):
        original = container.bus.publish
        failed = []

        async def publish_fails_once(*args, **kwargs):
            if not failed:
                failed.append(True)
                raise TransientError("Event bus is over capacity", code="bus_backpressure")
            return await original(*args, **kwargs)

        monkeypatch.setattr(container.bus, "publish", publish_fails_once)
        body = {**RATE_BODY, "event_id": "evt-78"}

        with pytest.raises(TransientError):
            await container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"]))
        assert db.query(OTAPayload).one().processing_status == "received"

        retry = await container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"]))

        assert not retry.duplicate
        assert [e.kind for e in published] == ["rate.update"]
        db.expire_all()
        assert db.query(OTAPayload).one().processing_status == "processed"

    async def test_stale_routing_claim_taken_over(self, container, published, clock, db):
        body = {**RATE_BODY, "event_id": "evt-79"}
        payload_id = await container.store.store_inbound(
            _wire("agoda", body, SECRETS["agoda"]),
            PayloadMetadata(channel="agoda", correlation_id="C-OLD", hotel_id="H1", channel_event_id="evt-79"),
        )
        assert await container.store.claim_for_routing(payload_id, 60)

        busy = await container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"]))
        assert busy.duplicate
        assert published == []

        clock.advance(61)
        taken_over = await container.inbound.handle("agoda", _wire("agoda", body, SECRETS["agoda"]))
        assert not taken_over.duplicate
        assert taken_over.correlation_id == "C-OLD"
        assert [e.kind for e in published] == ["rate.update"]

    async def test_invalid_signature(self, container, db):
        with pytest.raises(AuthError) as exc:
            await container.inbound.handle("expedia", _wire("expedia", MODIFICATION, signature="deadbeef"))
        assert exc.value.code == "signature_invalid"

        record = db.query(OTAPayload).one()
        assert record.processing_status == "ignored"
        assert record.processing_error == "signature_invalid"
        assert record.signature_valid is False
        assert db.query(IntegrationAlert).one().alert_type == "auth_failure"

    async def test_missing_signature(self, container):
        with pytest.raises(AuthError) as exc:
            await container.inbound.handle("expedia", _wire("expedia", MODIFICATION))
        assert exc.value.code == "signature_missing"

    async def test_configured_secret_wins(self, container, add_channel):
        add_channel("H1", "expedia", signature_secret="hotel-specific")
        with pytest.raises(AuthError):
            await container.inbound.handle("expedia", _wire("expedia", MODIFICATION, SECRETS["expedia"]))

        result = await container.inbound.handle("expedia", _wire("expedia", MODIFICATION, "hotel-specific"))
        assert result.payload_id


class TestRouting:
    """Operation classification and event routing"""

    async def test_invalid_json(self, container, db):
        with pytest.raises(ValidationError) as exc:
            await container.inbound.handle("expedia", _wire("expedia", b"<xml/>", SECRETS["expedia"]))
        assert exc.value.code == "invalid_json"
        record = db.query(OTAPayload).one()
        assert record.processing_status == "failed"
        assert record.processing_error == "invalid_json"

    async def test_unrouted_operation_ignored(self, container, db, published):
        result = await container.inbound.handle(
            "expedia", _wire("expedia", {"event": "ping"}, SECRETS["expedia"])
        )
        assert result.event_kind is None
        assert result.operation == BusinessOperation.WEBHOOK_NOTIFICATION.value
        assert db.query(OTAPayload).one().processing_error == "unrouted_operation"
        assert published == []

    async def test_rate_update_routed_as_channel(self, container, db, published):
        body = {"event": "rate.update", "hotel_id": "H1", "room_type": "RT1", "date": "2025-03-14", "rate": 150}
        result = await container.inbound.handle("expedia", _wire("expedia", body, SECRETS["expedia"]))

        assert result.event_kind == "rate.update"
        event = published[0]
        assert event.originator == "channel:expedia"
        assert event.correlation_id == result.correlation_id
        assert event.data.rate == 150
        assert db.query(OTAPayload).one().processing_status == "processed"

    async def test_unknown_channel(self, container):
        with pytest.raises(NotFoundError):
            await container.inbound.handle("trivago", _wire("expedia", {"a": 1}, SECRETS["expedia"]))

    async def test_oversize_body(self, container):
        container.inbound.max_body_bytes = 10
        with pytest.raises(PayloadTooLarge):
            await container.inbound.handle("expedia", _wire("expedia", MODIFICATION, SECRETS["expedia"]))

    @pytest.mark.parametrize("data,path,expected", [
        ({"event": "reservation_cancelled"}, None, "cancellation_request"),
        ({"booking_id": "B1", "status": "cancelled"}, None, "cancellation_request"),
        ({"booking_id": "B1", "modification_id": "M1"}, None, "amendment"),
        ({"booking_id": "B1", "new_check_in": "2025-04-01"}, None, "booking_modification"),
        ({"booking_id": "B1", "guest_name": "Ali"}, None, BusinessOperation.BOOKING_CREATE.value),
        ({"availability": 3}, None, BusinessOperation.AVAILABILITY_UPDATE.value),
        ({"stop_sell": True}, None, BusinessOperation.STOP_SELL_UPDATE.value),
        ({}, "/hooks/rates", BusinessOperation.RATE_UPDATE.value),
        ({}, None, BusinessOperation.WEBHOOK_NOTIFICATION.value),
    ])
    def test_classify_operation(self, data, path, expected):
        assert classify_operation(path, None, data) == expected


class TestWebhookEndpoint:
    """POST /webhooks/channels/{channel_id}"""

    def _post(self, client, channel, body, secret=None, headers=None):
        raw = json.dumps(body).encode()
        request_headers = {"Content-Type": "application/json"}
        if secret:
            request_headers["X-Expedia-Signature"] = compute_signature(raw, secret)
        request_headers.update(headers or {})
        return client.post(f"/webhooks/channels/{channel}", content=raw, headers=request_headers)

    def test_accepted(self, client):
        response = self._post(client, "expedia", MODIFICATION, SECRETS["expedia"])

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert response.headers["X-Correlation-Id"] == data["correlationId"]

    def test_caller_correlation_id_kept(self, client):
        response = self._post(client, "expedia", MODIFICATION, SECRETS["expedia"],
                              headers={"X-Correlation-Id": "ota-corr-1"})
        assert response.json()["correlationId"] == "ota-corr-1"

    def test_bad_signature(self, client):
        response = self._post(client, "expedia", MODIFICATION, "wrong-secret")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "signature_invalid"

    def test_unknown_channel(self, client):
        response = self._post(client, "trivago", MODIFICATION, SECRETS["expedia"])
        assert response.status_code == 404
        assert response.json()["ok"] is False

    def test_too_large(self, client, container):
        container.inbound.max_body_bytes = 32
        response = self._post(client, "expedia", MODIFICATION, SECRETS["expedia"])
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "payload_too_large"
