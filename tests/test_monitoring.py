"""
Tests for channel monitoring and the maintenance scheduler

Tests cover:
- Send outcome counters, success / failure rates, latency percentiles
- Real-time status with circuits and bus queue depth
- Per-minute export (JSON rows and CSV)
- Prometheus exposition
- Failure-rate and p95 latency alerts
- Scheduler job registration and failure isolation
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ota_core.errors import ValidationError
from ota_core.models.integration_alert import IntegrationAlert
from ota_core.services.alerts import AlertService
from ota_core.services.monitoring import ChannelMonitor
from ota_core.services.scheduler import MaintenanceScheduler


@pytest.fixture
def monitor(clock, session_factory, container):
    return ChannelMonitor(
        clock,
        alerts=AlertService(session_factory, clock),
        bus=container.bus,
        circuits=container.circuits,
        failure_rate_threshold=0.2,
        p95_threshold_ms=1000,
        min_samples=5,
    )


class TestChannelStats:
    """Counters and derived rates"""

    def test_rates_and_latency(self, monitor):
        for latency in (100, 120, 140):
            monitor.record_send("H1", "expedia", "success", latency)
        monitor.record_send("H1", "expedia", "retryable", 900)
        monitor.record_send("H1", "expedia", "parked")

        stats = monitor.channel_stats()[0]
        assert stats["sent"] == 4
        assert stats["success"] == 3
        assert stats["parked"] == 1
        assert stats["failures"] == {"retryable": 1}
        assert stats["successRate"] == 0.75
        assert stats["failureRate"] == 0.25
        assert stats["latencyMs"]["p50"] == 120
        assert stats["latencyMs"]["p99"] == 900
        assert stats["circuitState"] == "closed"

    def test_status_snapshot(self, monitor, container):
        container.circuits.record_failure("H1", "airbnb", "http_401", force_open=True)
        monitor.record_inbound("expedia", "accepted")
        monitor.record_amendment("pending")
        monitor.record_dead_letter("dispatch:airbnb")

        status = monitor.status()
        assert status["bus"]["running"] is False
        assert status["bus"]["queueDepth"]["amendment-engine"] == 0
        assert status["bus"]["deadLetters"] == {"dispatch:airbnb": 1}
        assert status["circuits"][0]["state"] == "open"
        assert status["inbound"] == {"expedia/accepted": 1}
        assert status["amendmentsByState"] == {"pending": 1}

    def test_export_per_minute(self, monitor, clock):
        monitor.record_send("H1", "expedia", "success", 50)
        clock.advance(60)
        monitor.record_send("H1", "expedia", "auth", 80)

        rows = monitor.export()
        assert [(r["success"], r["auth"]) for r in rows] == [(1, 0), (0, 1)]
        assert rows[1]["p95Ms"] == 80

        only_latest = monitor.export(start=clock.now().replace(second=0))
        assert len(only_latest) == 1

        csv_text = monitor.export_csv()
        assert csv_text.splitlines()[0].startswith("minute,hotelId,channel,published")
        assert len(csv_text.strip().splitlines()) == 3

    def test_series_pruned_after_retention(self, clock):
        monitor = ChannelMonitor(clock, retention_minutes=5)
        monitor.record_send("H1", "expedia", "success", 10)
        clock.advance(minutes=10)
        monitor.record_send("H1", "expedia", "success", 10)
        assert len(monitor.export()) == 1

    def test_prometheus(self, monitor):
        monitor.record_send("H1", "expedia", "success", 42)
        text = monitor.prometheus()

        assert "# TYPE ota_outbound_requests_total counter" in text
        assert 'ota_outbound_requests_total{hotel_id="H1",channel="expedia",outcome="success"} 1' in text
        assert 'ota_outbound_latency_ms{hotel_id="H1",channel="expedia",quantile="0.95"} 42' in text
        assert "ota_bus_queue_depth" in text


class TestThresholdAlerts:
    """evaluate_alerts()"""

    def test_failure_rate_alert(self, monitor, db):
        for _ in range(3):
            monitor.record_send("H1", "booking_com", "success", 100)
        for _ in range(2):
            monitor.record_send("H1", "booking_com", "retryable", 100)

        raised = monitor.evaluate_alerts()
        assert [a["type"] for a in raised] == ["sync_failure_rate"]
        assert raised[0]["failureRate"] == 0.4
        assert db.query(IntegrationAlert).one().channel == "booking_com"

    def test_latency_alert(self, monitor):
        for _ in range(5):
            monitor.record_send("H1", "agoda", "success", 2500)
        raised = monitor.evaluate_alerts()
        assert [a["type"] for a in raised] == ["high_latency"]

    def test_too_few_samples(self, monitor):
        for _ in range(4):
            monitor.record_send("H1", "agoda", "network")
        assert monitor.evaluate_alerts() == []

    def test_old_minutes_outside_window(self, monitor, clock):
        for _ in range(5):
            monitor.record_send("H1", "agoda", "network")
        clock.advance(minutes=30)
        assert monitor.evaluate_alerts(window_minutes=15) == []


class TestScheduler:
    """MaintenanceScheduler"""

    async def test_registers_jobs(self, container):
        scheduler = container.scheduler
        assert scheduler.start()
        try:
            status = scheduler.status()
            assert status["running"] is True
            assert status["timezone"] == "UTC"
            assert {job["id"] for job in status["jobs"]} == {
                "retention_sweep", "weekly_archival", "retention_compliance", "amendment_expiry", "channel_alerts",
            }
        finally:
            scheduler.stop()
        assert scheduler.status()["running"] is False

    async def test_job_result_recorded(self, container):
        result = await container.scheduler.run_amendment_expiry()
        assert result == 0
        assert container.scheduler.last_results["amendment_expiry"]["ok"] is True

    async def test_failure_does_not_propagate(self):
        retention = MagicMock()
        retention.run_sweep = AsyncMock(side_effect=ValidationError("bad archive path"))
        retention.run_weekly_archival = AsyncMock(side_effect=RuntimeError("disk gone"))
        scheduler = MaintenanceScheduler(retention=retention)

        assert await scheduler.run_retention_sweep() is None
        assert await scheduler.run_weekly_archival() is None
        assert scheduler.last_results["retention_sweep"] == {
            "ok": False, "at": scheduler.last_results["retention_sweep"]["at"], "error": "bad archive path",
        }
        assert scheduler.last_results["weekly_archival"]["error"] == "disk gone"

    async def test_alert_evaluation_job(self, container):
        assert await container.scheduler.run_alert_evaluation() == []
