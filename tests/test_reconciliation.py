"""
Tests for reconciliation and the compliance report

Tests cover:
- Discrepancy between internal booking and the latest channel view
- Weighted consistency score
- Only authenticated inbound payloads count as the external view
- Compliance report totals, overdue retention and redaction coverage
"""

import json
from datetime import date

import pytest

from ota_core.errors import NotFoundError
from ota_core.services.booking_snapshot import BookingSnapshot
from ota_core.services.payload_store import PayloadMetadata, WireRequest


def _wire(body, headers=None):
    return WireRequest(
        method="POST",
        url="https://pms.example.com/webhooks/channels/expedia",
        headers=headers or {"Content-Type": "application/json"},
        body=json.dumps(body).encode(),
        path="/webhooks/channels/expedia",
    )


async def _inbound(container, body, correlation_id, authenticated=True, channel="expedia", headers=None):
    return await container.store.store_inbound(
        _wire(body, headers),
        PayloadMetadata(channel=channel, correlation_id=correlation_id, hotel_id="H1", authenticated=authenticated),
    )


@pytest.fixture
def booking(snapshots):
    snapshots.put(BookingSnapshot(
        booking_id="B-7",
        hotel_id="H1",
        status="confirmed",
        check_in=date(2025, 3, 30),
        check_out=date(2025, 4, 1),
        room_type="DLX",
        guest_name="Sara Nasser",
        total_amount=400.0,
        channel="expedia",
        channel_reservation_id="EXP-9001",
    ))


FULL_BOOKING = {
    "booking_id": "B-7",
    "reservation_id": "EXP-9001",
    "check_in": "2025-03-30",
    "check_out": "2025-04-01",
    "status": "confirmed",
    "total_amount": 400,
    "room_type": "DLX",
    "guest_name": "Sara  Nasser",
}


class TestReconcile:
    """Per-booking comparison"""

    async def test_check_out_discrepancy(self, container, booking, clock):
        await _inbound(container, FULL_BOOKING, "C1")
        clock.advance(60)
        latest = await _inbound(container, {"reservation_id": "EXP-9001", "check_out": "2025-04-03"}, "C2")

        report = await container.reconciliation.reconcile("B-7")

        assert report["correlationIds"] == ["C1", "C2"]
        assert report["payloadsExamined"] == 2
        assert report["fieldsCompared"] == ["checkIn", "checkOut", "status", "rate", "roomType", "guestName"]
        assert report["discrepancies"] == [{
            "field": "checkOut",
            "internalValue": "2025-04-01",
            "externalValue": "2025-04-03",
            "sourcePayloadId": latest,
            "observedAt": clock.now().isoformat(),
            "severity": "high",
            "weight": 1.0,
        }]
        # 1 - 1.0 / 5.25
        assert report["consistencyScore"] == pytest.approx(80.95)

    async def test_consistent_booking_scores_100(self, container, booking):
        await _inbound(container, FULL_BOOKING, "C1")
        report = await container.reconciliation.reconcile("B-7")
        assert report["discrepancies"] == []
        assert report["consistencyScore"] == 100.0

    async def test_rate_severity(self, container, booking):
        await _inbound(container, {"booking_id": "B-7", "total_amount": 405}, "C1")
        report = await container.reconciliation.reconcile("B-7")
        assert report["discrepancies"][0]["field"] == "rate"
        assert report["discrepancies"][0]["severity"] == "medium"
        assert report["consistencyScore"] == 0.0

    async def test_unauthenticated_payloads_ignored(self, container, booking):
        await _inbound(container, FULL_BOOKING, "C1")
        await _inbound(container, {"booking_id": "B-7", "status": "cancelled"}, "C1", authenticated=False)

        report = await container.reconciliation.reconcile("B-7")
        assert report["payloadsExamined"] == 1
        assert report["discrepancies"] == []

    async def test_no_payloads(self, container, booking):
        report = await container.reconciliation.reconcile("B-7")
        assert report["consistencyScore"] == 100.0
        assert report["fieldsCompared"] == []
        assert report["correlationIds"] == []

    async def test_unknown_booking(self, container):
        with pytest.raises(NotFoundError):
            await container.reconciliation.reconcile("B-404")


class TestComplianceReport:
    """Aggregate compliance view"""

    async def test_totals_and_retention(self, container, db, clock):
        await _inbound(container, {"contact": "guest@example.com"}, "C1")
        await _inbound(container, {"rates": [{"price": 100}]}, "C2", channel="booking_com")

        report = container.reconciliation.compliance_report(db)
        assert report["totals"]["payloads"] == 2
        assert report["totals"]["byChannel"] == {"expedia": 1, "booking_com": 1}
        assert report["totals"]["containsPii"] == 1
        assert report["retention"]["compliancePercent"] == 100.0
        assert report["redaction"]["coveragePercent"] == 100.0

        clock.advance(days=100)
        report = container.reconciliation.compliance_report(db)
        # internal data is due for archival after 90 days
        assert report["retention"]["overdueArchival"] == 1
        assert report["retention"]["compliancePercent"] == 50.0

        clock.advance(days=400)
        report = container.reconciliation.compliance_report(db)
        assert report["retention"]["overdueDeletion"] == 1
        assert report["retention"]["overdueArchival"] == 2
        assert report["retention"]["compliancePercent"] == 0.0

    async def test_window_filter(self, container, db, clock):
        await _inbound(container, {"a": 1}, "C1")
        clock.advance(days=2)
        start = clock.now()
        await _inbound(container, {"b": 2}, "C2", channel="agoda")

        report = container.reconciliation.compliance_report(db, start=start)
        assert report["totals"]["payloads"] == 1
        assert report["window"]["start"] == start.isoformat()

    def test_empty_store(self, container, db):
        report = container.reconciliation.compliance_report(db)
        assert report["totals"]["payloads"] == 0
        assert report["retention"]["compliancePercent"] == 100.0
        assert report["audit"]["averageScore"] is None
