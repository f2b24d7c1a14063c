"""
Tests for the Amendment Engine and its rules

Tests cover:
- Intake: dedup, hard violations, auto-approve policy, manual review reasons
- Decisions: approve / reject / partial, re-validation and bypass
- Bulk decisions with per-id outcomes
- TTL expiry of stale pending amendments
- Manual booking status changes against the status graph
- Review queue ordering and the stop-sell tracker
- Concurrent decisions and redelivered intake emit one booking change
"""

import asyncio
from datetime import date, datetime

import pytest
from sqlalchemy.exc import OperationalError

from ota_core.errors import InvalidTransitionError, NotFoundError, TransientError, ValidationError
from ota_core.models.audit_log import AuditLog
from ota_core.schemas.events import validate_event_payload
from ota_core.services.amendment_rules import (
    AmendmentPolicy,
    amendment_priority,
    can_change_status,
    evaluate,
    extract_requested_changes,
    infer_amendment_type,
)
from ota_core.services.booking_snapshot import BookingSnapshot


def _booking(**overrides):
    values = dict(
        booking_id="B-7",
        hotel_id="H1",
        status="confirmed",
        check_in=date(2025, 3, 30),
        check_out=date(2025, 4, 1),
        room_type="DLX",
        total_amount=400.0,
        currency="USD",
        channel="expedia",
        channel_reservation_id="EXP-9001",
    )
    values.update(overrides)
    return BookingSnapshot(**values)


def _request(changes, amendment_id="AM-1", amendment_type="dates_change", **extra):
    payload = {
        "payload_id": f"IN_EXP_{amendment_id}",
        "channel": "expedia",
        "channel_amendment_id": amendment_id,
        "amendment_type": amendment_type,
        "hotel_id": "H1",
        "booking_id": "B-7",
        "channel_reservation_id": "EXP-9001",
        "requested_changes": changes,
    }
    payload.update(extra)
    return validate_event_payload("amendment.received", payload)


@pytest.fixture
def engine(container, snapshots):
    snapshots.put(_booking())
    return container.amendments


@pytest.fixture
def published(container):
    events = []
    container.bus.add_listener(events.append)
    return events


class TestIntake:
    """receive()"""

    async def test_auto_approve_within_policy(self, engine, published):
        view = await engine.receive(_request({"checkIn": "2025-03-31", "checkOut": "2025-04-02"}), "C1")

        assert view["state"] == "auto_approved"
        assert view["appliedChanges"] == {"checkIn": "2025-03-31", "checkOut": "2025-04-02"}
        assert [s["state"] for s in view["stateHistory"]] == ["pending", "auto_approved"]
        assert [e.kind for e in published] == ["booking.modified", "amendment.decided"]
        assert published[0].data.status == "modified"
        assert published[1].originator == "amendment-engine"

    async def test_duplicate_returns_existing(self, engine, published, db):
        request = _request({"checkIn": "2025-03-31", "checkOut": "2025-04-02"})
        first = await engine.receive(request, "C1")
        second = await engine.receive(request, "C2")

        assert second["id"] == first["id"]
        assert engine.list_amendments(db)[1] == 1
        assert len(published) == 2

    @pytest.mark.parametrize("amount,state,reason", [
        (420.0, "auto_approved", None),
        (460.0, "pending", "rate_delta_exceeds_policy"),
        (520.0, "pending", "rate_delta_requires_review"),
    ])
    async def test_rate_delta_policy(self, engine, amount, state, reason):
        view = await engine.receive(_request({"totalAmount": amount}, amendment_type="rate_change"), "C1")
        assert view["state"] == state
        if reason:
            assert reason in view["manualApprovalReasons"]

    async def test_booking_not_amendable_rejected(self, engine, snapshots, published):
        snapshots.put(_booking(status="cancelled"))
        view = await engine.receive(_request({"checkIn": "2025-03-31"}), "C1")

        assert view["state"] == "rejected"
        assert view["decisionReason"]["rule"] == "booking_not_amendable"
        assert [e.kind for e in published] == ["amendment.decided"]
        assert published[0].data.state == "rejected"

    async def test_missing_snapshot_goes_to_review(self, container, published):
        view = await container.amendments.receive(_request({"checkIn": "2025-03-31"}), "C1")
        assert view["state"] == "pending"
        assert view["manualApprovalReasons"] == ["booking_snapshot_unavailable"]
        assert published == []

    async def test_cancellation_is_critical_and_reviewed(self, engine):
        view = await engine.receive(_request({}, amendment_type="cancellation_request"), "C1")
        assert view["state"] == "pending"
        assert view["priority"] == "critical"
        assert "cancellation_requires_review" in view["manualApprovalReasons"]

    async def test_conflicting_pending_amendment(self, engine):
        await engine.receive(_request({"roomType": "STE"}, amendment_id="AM-1", amendment_type="room_change"), "C1")
        view = await engine.receive(
            _request({"roomType": "SGL"}, amendment_id="AM-2", amendment_type="room_change"), "C2"
        )
        assert "conflicts_with_pending_amendment" in view["manualApprovalReasons"]

    async def test_channel_requested_review(self, engine):
        view = await engine.receive(
            _request({"checkIn": "2025-03-31"}, requires_manual_approval=True), "C1"
        )
        assert view["state"] == "pending"
        assert view["manualApprovalReasons"] == ["channel_requested_review"]

    async def test_stop_sell_tracked_from_bus(self, running, snapshots):
        snapshots.put(_booking())
        await running.bus.publish(
            "stop-sell.changed",
            {"hotel_id": "H1", "room_type": "DLX", "dates": ["2025-04-01"], "stop_sell": True},
        )
        assert await running.bus.wait_idle(5)

        view = await running.amendments.receive(_request({"checkOut": "2025-04-02"}), "C1")
        assert view["state"] == "pending"
        assert "stop_sell_conflict" in view["manualApprovalReasons"]


class TestDecisions:
    """decide() and bulk_decide()"""

    async def _pending(self, engine, amendment_id="AM-1"):
        view = await engine.receive(
            _request({"checkIn": "2025-04-29", "checkOut": "2025-05-01"}, amendment_id=amendment_id), "C1"
        )
        assert view["state"] == "pending"
        return view["id"]

    async def test_approve(self, engine, published, db):
        amendment_id = await self._pending(engine)
        view = await engine.decide(amendment_id, "approve", actor="u1", reason="guest called")

        assert view["state"] == "approved"
        assert view["decidedBy"] == "u1"
        modified = [e for e in published if e.kind == "booking.modified"][0]
        assert modified.data.check_in == date(2025, 4, 29)
        assert modified.originator == "channel:expedia"

        transition = engine.booking_transitions(db, "B-7")[0]
        assert transition.reason == "guest called"
        assert transition.source == "user"
        assert db.query(AuditLog).filter(AuditLog.entity_id == amendment_id).count() == 1

    async def test_partial(self, engine):
        amendment_id = await self._pending(engine)
        view = await engine.decide(amendment_id, "partial", actor="u1", approved_fields=["checkOut"])
        assert view["state"] == "partially_approved"
        assert view["appliedChanges"] == {"checkOut": "2025-05-01"}

    async def test_partial_field_checks(self, engine):
        amendment_id = await self._pending(engine)
        with pytest.raises(ValidationError) as missing:
            await engine.decide(amendment_id, "partial", actor="u1")
        with pytest.raises(ValidationError) as unknown:
            await engine.decide(amendment_id, "partial", actor="u1", approved_fields=["roomType"])

        assert missing.value.code == "partial_fields_missing"
        assert unknown.value.code == "partial_fields_unknown"

    async def test_terminal_amendment_cannot_be_decided(self, engine):
        amendment_id = await self._pending(engine)
        await engine.decide(amendment_id, "reject", actor="u1")
        with pytest.raises(InvalidTransitionError):
            await engine.decide(amendment_id, "approve", actor="u2")

    async def test_unknown_action(self, engine):
        with pytest.raises(ValidationError):
            await engine.decide("AMD-x", "maybe", actor="u1")

    async def test_revalidation_turns_approval_into_rejection(self, engine, snapshots):
        amendment_id = await self._pending(engine)
        snapshots.put(_booking(status="no_show"))

        view = await engine.decide(amendment_id, "approve", actor="u1")
        assert view["state"] == "rejected"
        assert view["decisionReason"]["rule"] == "booking_not_amendable"

    async def test_bypass_validation(self, engine, snapshots, db):
        amendment_id = await self._pending(engine)
        snapshots.put(_booking(status="no_show"))

        view = await engine.decide(amendment_id, "approve", actor="u1", bypass_validation=True)
        assert view["state"] == "approved"
        assert view["validationBypassed"] is True
        assert engine.booking_transitions(db, "B-7")[0].validation_bypassed is True

    async def test_bulk_reports_each_outcome(self, engine):
        first = await self._pending(engine, "AM-1")
        outcomes = await engine.bulk_decide("reject", [first, "AMD-missing"], actor="u1", reason="sold out")

        assert outcomes[0] == {"amendmentId": first, "ok": True, "state": "rejected"}
        assert outcomes[1]["ok"] is False
        assert outcomes[1]["error"]["code"] == "not_found"

    async def test_bulk_partial_not_supported(self, engine):
        with pytest.raises(ValidationError):
            await engine.bulk_decide("partial", ["AMD-1"], actor="u1")


class TestExpiry:
    """TTL sweep"""

    async def test_expire_stale(self, engine, clock, published, db):
        view = await engine.receive(_request({"checkIn": "2025-04-29", "checkOut": "2025-05-01"}), "C1")

        clock.advance(hours=47)
        assert await engine.expire_stale() == 0

        clock.advance(hours=2)
        assert await engine.expire_stale() == 1

        amendment = engine.get(db, view["id"])
        assert amendment.state == "expired"
        assert amendment.decision_reason["rule"] == "expired"
        assert published[-1].kind == "amendment.decided"
        assert published[-1].data.state == "expired"


@pytest.fixture
def slow_publish(container, monkeypatch):
    """Every publish yields to the loop first, like a bus under load"""
    original = container.bus.publish

    async def publish(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await original(*args, **kwargs)

    monkeypatch.setattr(container.bus, "publish", publish)


@pytest.fixture
def booking_publish_fails_once(container, monkeypatch):
    original = container.bus.publish
    failed = []

    async def publish(kind, *args, **kwargs):
        if kind == "booking.modified" and not failed:
            failed.append(kind)
            raise TransientError("Event bus is over capacity", code="bus_backpressure")
        return await original(kind, *args, **kwargs)

    monkeypatch.setattr(container.bus, "publish", publish)
    return failed


class TestConcurrency:
    """Interleaved decisions and redelivered intake"""

    async def test_concurrent_approvals_modify_booking_once(self, engine, published, slow_publish):
        view = await engine.receive(_request({"checkIn": "2025-04-29", "checkOut": "2025-05-01"}), "C1")
        assert view["state"] == "pending"

        results = await asyncio.gather(
            engine.decide(view["id"], "approve", actor="u1"),
            engine.decide(view["id"], "approve", actor="u2"),
            return_exceptions=True,
        )

        states = sorted(r["state"] if isinstance(r, dict) else type(r).__name__ for r in results)
        assert states == ["InvalidTransitionError", "approved"]
        assert [e.kind for e in published] == ["booking.modified", "amendment.decided"]

    async def test_approval_racing_expiry(self, engine, clock, published, slow_publish):
        view = await engine.receive(_request({"checkIn": "2025-04-29", "checkOut": "2025-05-01"}), "C1")
        clock.advance(hours=49)

        results = await asyncio.gather(
            engine.decide(view["id"], "approve", actor="u1"),
            engine.expire_stale(),
            return_exceptions=True,
        )

        decided, expired = results
        kinds = [e.kind for e in published]
        assert kinds.count("amendment.decided") == 1
        if expired:
            assert isinstance(decided, InvalidTransitionError)
            assert "booking.modified" not in kinds
        else:
            assert decided["state"] == "approved"
            assert kinds.count("booking.modified") == 1

    async def test_redelivery_resumes_auto_approval(self, engine, published, booking_publish_fails_once, db):
        request = _request({"checkIn": "2025-03-31", "checkOut": "2025-04-02"})

        with pytest.raises(TransientError):
            await engine.receive(request, "C1")
        assert booking_publish_fails_once == ["booking.modified"]

        view = await engine.receive(request, "C1")

        assert view["state"] == "auto_approved"
        assert [s["state"] for s in view["stateHistory"]] == ["pending", "auto_approved"]
        assert [e.kind for e in published] == ["booking.modified", "amendment.decided"]
        assert engine.list_amendments(db)[1] == 1

    async def test_redelivery_queues_when_policy_no_longer_matches(self, engine, snapshots, published,
                                                                   booking_publish_fails_once, db):
        request = _request({"checkIn": "2025-03-31", "checkOut": "2025-04-02"})
        with pytest.raises(TransientError):
            await engine.receive(request, "C1")

        # booking moved meanwhile, so the same request is now an 11-day shift
        snapshots.put(_booking(check_in=date(2025, 3, 20), check_out=date(2025, 3, 22)))
        view = await engine.receive(request, "C1")

        assert view["state"] == "pending"
        assert view["requiresManualApproval"] is True
        assert view["manualApprovalReasons"] == ["date_shift_exceeds_policy"]
        assert [a.amendment_id for a in engine.review_queue(db)] == [view["id"]]
        assert published == []

    async def test_bulk_keeps_going_on_store_errors(self, engine, monkeypatch):
        view = await engine.receive(_request({"checkIn": "2025-04-29", "checkOut": "2025-05-01"}), "C1")
        original_get = engine.get

        def get(db, amendment_id):
            if amendment_id == "AMD-broken":
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return original_get(db, amendment_id)

        monkeypatch.setattr(engine, "get", get)
        outcomes = await engine.bulk_decide("reject", ["AMD-broken", view["id"]], actor="u1", reason="sold out")

        assert len(outcomes) == 2
        assert outcomes[0]["ok"] is False
        assert outcomes[0]["error"]["code"] == "amendment_read_failed"
        assert outcomes[1] == {"amendmentId": view["id"], "ok": True, "state": "rejected"}


class TestBookingStatus:
    """change_booking_status()"""

    async def test_valid_change_publishes(self, engine, published):
        transition = await engine.change_booking_status("B-7", "checked_in", actor="fd-1", reason="arrived")

        assert transition["fromStatus"] == "confirmed"
        assert transition["toStatus"] == "checked_in"
        assert transition["actor"] == "fd-1"
        assert published[0].kind == "booking.modified"
        assert published[0].originator == "user:fd-1"
        assert published[0].data.changes == {"status": "checked_in"}

    async def test_cancel_publishes_cancelled(self, engine, published):
        await engine.change_booking_status("B-7", "cancelled", actor="fd-1", notify_channels=False)
        assert published[0].kind == "booking.cancelled"
        assert published[0].data.notify_channels is False

    async def test_illegal_edge(self, engine, published):
        with pytest.raises(InvalidTransitionError) as exc:
            await engine.change_booking_status("B-7", "checked_out", actor="fd-1")
        assert exc.value.details == {"from": "confirmed", "to": "checked_out"}
        assert published == []

    async def test_bypass(self, engine):
        transition = await engine.change_booking_status("B-7", "checked_out", actor="mgr", bypass_validation=True)
        assert transition["validationBypassed"] is True

    async def test_unknown_booking(self, container):
        with pytest.raises(NotFoundError):
            await container.amendments.change_booking_status("B-404", "cancelled", actor="fd-1")


class TestReviewQueue:
    """Urgency ordering"""

    async def test_cancellations_first(self, engine, snapshots, db):
        snapshots.put(_booking(booking_id="B-8", check_in=date(2025, 3, 3), check_out=date(2025, 3, 5),
                               channel_reservation_id="EXP-9002"))
        await engine.receive(_request({"roomType": "STE"}, amendment_id="AM-1", amendment_type="room_change"), "C1")
        await engine.receive(
            _request({"roomType": "STE"}, amendment_id="AM-2", amendment_type="room_change", booking_id="B-8"), "C2"
        )
        await engine.receive(
            _request({}, amendment_id="AM-3", amendment_type="cancellation_request", booking_id="B-8"), "C3"
        )

        queue = engine.review_queue(db)
        assert [a.channel_amendment_id for a in queue] == ["AM-3", "AM-2", "AM-1"]


class TestRules:
    """Pure rule evaluation"""

    NOW = datetime(2025, 3, 1, 9, 0)

    def test_modification_window_closed(self):
        booking = _booking(check_in=date(2025, 3, 1), check_out=date(2025, 3, 3))
        result = evaluate("dates_change", {"checkOut": "2025-03-04"}, booking,
                          datetime(2025, 3, 1, 13, 0), AmendmentPolicy())
        assert result.violations[0].rule == "modification_window_closed"

    def test_check_in_in_past(self):
        result = evaluate("dates_change", {"checkIn": "2025-02-27"}, _booking(), self.NOW, AmendmentPolicy())
        assert result.violations[0].rule == "check_in_in_past"

    def test_checked_in_guest_extends_stay(self):
        booking = _booking(status="checked_in", check_in=date(2025, 2, 27), check_out=date(2025, 3, 2))
        result = evaluate("dates_change", {"checkOut": "2025-03-04"}, booking, self.NOW, AmendmentPolicy())
        assert not result.violations
        assert result.manual_reasons == ["guest_checked_in"]

    def test_invalid_range(self):
        result = evaluate("dates_change", {"checkIn": "2025-04-05", "checkOut": "2025-04-03"}, _booking(),
                          self.NOW, AmendmentPolicy())
        assert result.violations[0].rule == "invalid_date_range"

    def test_near_arrival_reviewed(self):
        booking = _booking(check_in=date(2025, 3, 2), check_out=date(2025, 3, 4))
        result = evaluate("dates_change", {"checkOut": "2025-03-05"}, booking, datetime(2025, 3, 1, 20, 0),
                          AmendmentPolicy())
        assert not result.violations
        assert result.manual_reasons == ["date_change_near_arrival"]

    def test_room_and_contact_changes_reviewed(self):
        result = evaluate("booking_modification", {"roomType": "STE", "guestEmail": "a@b.com"}, _booking(),
                          self.NOW, AmendmentPolicy())
        assert result.manual_reasons == ["room_change_requires_review", "contact_details_change"]

    def test_non_positive_rate(self):
        result = evaluate("rate_change", {"totalAmount": 0}, _booking(), self.NOW, AmendmentPolicy())
        assert result.violations[0].rule == "invalid_rate"

    def test_extract_prefers_new_keys(self):
        body = {"check_in": "2025-03-30", "new_check_in": "2025-03-31", "guest_name": "Rami"}
        assert extract_requested_changes(body) == {"checkIn": "2025-03-31"}

    def test_extract_from_changes_object(self):
        body = {"changes": {"room_type": "STE", "special_requests": "late arrival"}}
        assert extract_requested_changes(body) == {"roomType": "STE", "specialRequests": "late arrival"}

    @pytest.mark.parametrize("changes,expected", [
        ({"checkIn": "x"}, "dates_change"),
        ({"totalAmount": 1}, "rate_change"),
        ({"roomType": "STE"}, "room_change"),
        ({"guestName": "A", "guests": 2}, "guest_details_change"),
        ({"roomType": "STE", "checkIn": "x"}, "booking_modification"),
    ])
    def test_infer_type(self, changes, expected):
        assert infer_amendment_type({}, changes) == expected

    def test_infer_cancellation_from_event(self):
        assert infer_amendment_type({"event": "booking.cancelled"}, {}) == "cancellation_request"

    def test_status_graph(self):
        assert can_change_status("pending", "confirmed")
        assert can_change_status("modified", "modified")
        assert not can_change_status("checked_out", "checked_in")
        assert not can_change_status(None, "confirmed")

    def test_priority(self):
        assert amendment_priority("dates_change", _booking(check_in=date(2025, 3, 2)), self.NOW) == "high"
        assert amendment_priority("dates_change", _booking(check_in=date(2025, 6, 1)), self.NOW) == "low"
        assert amendment_priority("dates_change", None, self.NOW) == "medium"
