"""
Service container

Builds the integration core's collaborators once per process and owns their
start / stop order:
bus workers and adapters start after the schema is ready; on shutdown the
scheduler stops first, then the bus drains within the grace period, then the
HTTP clients close.
"""

import logging
from typing import Optional

from .config import settings
from .database import SessionLocal
from .models.integration_alert import AlertSeverity, AlertType
from .services.adapters import AdapterRegistry, default_registry
from .services.alerts import AlertService
from .services.amendment_engine import AmendmentEngine
from .services.booking_locks import BookingLocks
from .services.booking_snapshot import (
    BookingSnapshotReader,
    HttpBookingSnapshotReader,
    InMemoryBookingSnapshotReader,
)
from .services.circuit_breaker import CircuitBreakerRegistry
from .services.dispatcher import Dispatcher
from .services.event_bus import EventBus
from .services.http_transport import HttpTransport
from .services.inbound_pipeline import InboundPipeline
from .services.monitoring import ChannelMonitor
from .services.payload_audit import PayloadAuditor
from .services.payload_store import PayloadStore
from .services.rate_limiter import RateLimiterRegistry
from .services.reconciliation import ReconciliationEngine
from .services.retention import RetentionService
from .services.scheduler import MaintenanceScheduler
from .utils.clock import IdGenerator, SystemClock

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(self, session_factory=None, clock=None, ids=None,
                 registry: Optional[AdapterRegistry] = None,
                 snapshots: Optional[BookingSnapshotReader] = None,
                 transport: Optional[HttpTransport] = None,
                 archive_location: Optional[str] = None):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or SystemClock()
        self.ids = ids or IdGenerator(self.clock)
        self.registry = registry or default_registry()

        if snapshots is None:
            snapshots = (
                HttpBookingSnapshotReader(settings.booking_snapshot_url)
                if settings.booking_snapshot_url else InMemoryBookingSnapshotReader()
            )
        self.snapshots = snapshots
        self.transport = transport or HttpTransport()

        self.alerts = AlertService(self.session_factory, self.clock)
        self.bus = EventBus(
            self.session_factory, self.clock, self.ids,
            alerts=self.alerts,
            high_water=settings.bus_partition_high_water,
            default_retry_delay=settings.bus_default_retry_delay_seconds,
            dead_letter_capacity=settings.dead_letter_capacity,
        )
        self.circuits = CircuitBreakerRegistry(
            self.clock,
            failure_threshold=settings.circuit_failure_threshold,
            cool_off_seconds=settings.circuit_cool_off_seconds,
            on_open=self._on_circuit_open,
        )
        self.rate_limits = RateLimiterRegistry(self.clock)
        self.locks = BookingLocks()
        self.monitor = ChannelMonitor(self.clock, alerts=self.alerts, bus=self.bus, circuits=self.circuits)

        self.store = PayloadStore(self.session_factory, self.clock, self.ids)
        self.auditor = PayloadAuditor(self.store, self.alerts, self.clock)
        self.dispatcher = Dispatcher(
            self.bus, self.registry, self.store, self.transport, self.circuits, self.rate_limits,
            self.session_factory, self.clock,
            monitor=self.monitor, alerts=self.alerts, locks=self.locks,
        )
        self.amendments = AmendmentEngine(
            self.bus, self.session_factory, self.clock, self.ids, self.snapshots,
            monitor=self.monitor, locks=self.locks,
        )
        self.inbound = InboundPipeline(
            self.bus, self.store, self.registry, self.session_factory, self.clock, self.ids,
            alerts=self.alerts, monitor=self.monitor,
        )
        self.reconciliation = ReconciliationEngine(self.session_factory, self.snapshots, self.clock)
        self.retention = RetentionService(
            self.session_factory, self.clock, alerts=self.alerts, archive_location=archive_location,
        )
        self.scheduler = MaintenanceScheduler(
            retention=self.retention, amendments=self.amendments, monitor=self.monitor,
        )

        self.bus.add_listener(self.monitor.record_publish)
        self.bus.add_dead_letter_listener(lambda subscription, event: self.monitor.record_dead_letter(subscription))
        self.dispatcher.register()
        self.amendments.register()
        self._started = False

    def _on_circuit_open(self, hotel_id: str, channel: str, reason: str):
        self.alerts.raise_alert(
            AlertType.CIRCUIT_OPEN,
            f"Circuit opened for {channel} ({hotel_id}): {reason}",
            AlertSeverity.HIGH,
            channel=channel,
            hotel_id=hotel_id,
            details={"reason": reason},
        )

    async def start(self, workers: Optional[bool] = None):
        """Start bus workers and the maintenance scheduler"""
        if self._started:
            return
        workers = settings.workers_enabled if workers is None else workers
        if workers:
            await self.bus.start()
            self.scheduler.start()
        self._started = True
        logger.info(
            f"🔄 Integration core started (adapters: {', '.join(a.name for a in self.registry.all())}, "
            f"workers: {'on' if workers else 'off'})"
        )

    async def stop(self):
        if not self._started:
            return
        self.scheduler.stop()
        if self.bus.is_running:
            await self.bus.stop(grace=settings.shutdown_grace_seconds)
        await self.transport.aclose()
        if isinstance(self.snapshots, HttpBookingSnapshotReader):
            await self.snapshots.aclose()
        self._started = False
        logger.info("👋 Integration core stopped")
