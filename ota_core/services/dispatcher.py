"""
Outbound Dispatcher

Turns bus events into channel calls. One ordered bus subscription per
adapter (`dispatch:<channel>`), so per-correlation FIFO holds per channel.

Per event and adapter:
1. applies-to check and channel configuration lookup
2. circuit breaker per (hotel, channel): open -> park without spending an attempt
3. per-booking advisory lock, then a rate-limit token (both bounded)
4. serialize; store the outbound request; send with the remaining deadline
5. 2xx -> processed + ack
   4xx -> failed, dead-lettered as permanent (401/403 also opens the circuit)
   408/425/429/5xx/network -> failed attempt, nack with backoff
"""

import contextlib
import logging
import random
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import ValidationError
from ..models.channel_configuration import ChannelConfiguration
from ..models.integration_alert import AlertSeverity, AlertType
from ..models.payload import ProcessingStatus
from ..schemas.events import priority_for_kind
from ..utils.db_helpers import run_blocking
from ..utils.logging_config import get_logger
from . import monitoring
from .adapters import AdapterRegistry, ChannelAdapter
from .booking_locks import BookingLocks, BookingLockTimeout
from .payload_store import PayloadMetadata, WireResponse

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


class Dispatcher:
    def __init__(self, bus, registry: AdapterRegistry, store, transport, circuits, rate_limits,
                 session_factory, clock, monitor=None, alerts=None, locks: Optional[BookingLocks] = None,
                 base_delay: Optional[float] = None, max_delay: Optional[float] = None,
                 max_attempts: Optional[int] = None, worker_count: Optional[int] = None,
                 lock_timeout: Optional[float] = None, acquire_timeout: Optional[float] = None):
        self.bus = bus
        self.registry = registry
        self.store = store
        self.transport = transport
        self.circuits = circuits
        self.rate_limits = rate_limits
        self.session_factory = session_factory
        self.clock = clock
        self.monitor = monitor
        self.alerts = alerts
        self.locks = locks or BookingLocks()

        self.base_delay = base_delay if base_delay is not None else settings.dispatch_base_delay_seconds
        self.max_delay = max_delay if max_delay is not None else settings.dispatch_max_delay_seconds
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.worker_count = worker_count or settings.bus_worker_count
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.booking_lock_timeout_seconds
        self.acquire_timeout = (
            acquire_timeout if acquire_timeout is not None else settings.rate_limit_acquire_timeout_seconds
        )

    def register(self):
        """Subscribe one ordered consumer per adapter"""
        for adapter in self.registry.all():
            self.bus.subscribe(
                "|".join(sorted(adapter.supported_kinds)),
                self._handler_for(adapter),
                concurrency=self.worker_count,
                max_attempts=self.max_attempts,
                name=f"dispatch:{adapter.name}",
                ordered=True,
                deadline_seconds=settings.dispatch_deadline_seconds,
            )

    def _handler_for(self, adapter: ChannelAdapter):
        async def handle(event, ack, nack):
            await self.dispatch(adapter, event, ack, nack)
        handle.__qualname__ = f"dispatch_{adapter.name}"
        return handle

    def backoff_delay(self, attempt: int) -> float:
        """base * 2^(attempt-1) plus up to 25% jitter, capped"""
        delay = self.base_delay * (2 ** max(0, attempt - 1))
        delay += random.uniform(0, delay * 0.25)
        return min(delay, self.max_delay)

    # ------------------------------------------------------------------
    # Per-event flow
    # ------------------------------------------------------------------

    async def dispatch(self, adapter: ChannelAdapter, event, ack, nack):
        if not adapter.applies_to(event):
            ack()
            return

        data = event.data
        hotel_id = data.hotel_id
        channel = adapter.name

        config = await run_blocking(self._load_config, hotel_id, channel)
        if config is None or not config.enabled:
            logger.debug(f"No enabled {channel} configuration for hotel {hotel_id}, skipping {event.kind}")
            ack()
            return

        park_for = self.circuits.before_call(hotel_id, channel)
        if park_for is not None:
            self._record(hotel_id, channel, monitoring.PARKED)
            nack(park_for, reason="circuit_open", consume_attempt=False)
            return

        booking_id = getattr(data, "booking_id", None)
        lock = self.locks.hold(f"booking:{booking_id}", self.lock_timeout) if booking_id else contextlib.nullcontext()
        try:
            async with lock:
                profile = adapter.rate_limit_profile(config)
                if not await self.rate_limits.acquire(hotel_id, channel, profile, self.acquire_timeout):
                    logger.info(f"Rate limit token timeout for {hotel_id}/{channel}, re-enqueueing {event.id}")
                    self.circuits.release_probe(hotel_id, channel)
                    nack(1.0 / profile.requests_per_second, reason="rate_limit_timeout", consume_attempt=False)
                    return
                await self._send(adapter, event, config, ack, nack)
        except BookingLockTimeout:
            self.circuits.release_probe(hotel_id, channel)
            nack(self.base_delay, reason="booking_locked", consume_attempt=False)
        except Exception:
            # store or transport blew up before an outcome was recorded
            self.circuits.release_probe(hotel_id, channel)
            raise

    async def _send(self, adapter: ChannelAdapter, event, config: ChannelConfiguration, ack, nack):
        data = event.data
        hotel_id, channel = data.hotel_id, adapter.name

        try:
            request = adapter.serialize(event, config)
        except ValidationError as e:
            logger.error(f"Cannot serialize {event.kind} {event.id} for {channel}: {e.message}")
            self.circuits.release_probe(hotel_id, channel)
            self._record(hotel_id, channel, monitoring.PERMANENT)
            nack(reason=e.code, give_up=True)
            return

        metadata = PayloadMetadata(
            channel=channel,
            correlation_id=event.correlation_id,
            hotel_id=hotel_id,
            operation=adapter.operation_for(event),
            priority=priority_for_kind(event.kind),
            event_id=event.id,
            attempt=event.attempt_count,
            authenticated=True,
            parsed_fields=self._event_fields(data),
        )
        payload_id = await self.store.record_outbound_request(request, metadata)

        timeout = min(adapter.timeout_seconds, adapter.deadline_seconds(config))
        if event.deadline_at is not None:
            remaining = event.deadline_at - self.clock.monotonic()
            if remaining <= 0:
                self.circuits.release_probe(hotel_id, channel)
                await self.store.attach_response(
                    payload_id, WireResponse(error="deadline exceeded before send"),
                    ProcessingStatus.FAILED.value, error="deadline_exceeded",
                )
                nack(reason="deadline_exceeded", give_up=True)
                return
            timeout = min(timeout, remaining)

        exchange = await self.transport.send(request, timeout)
        response = exchange.response
        outcome = adapter.parse_response(response)

        structured_logger.outbound_call(
            channel=channel,
            hotel_id=hotel_id,
            method=request.method,
            url=request.url,
            status_code=response.status,
            duration_ms=response.duration_ms or 0.0,
            error=outcome.error_code,
        )

        if outcome.ok:
            await self.store.attach_response(payload_id, response, ProcessingStatus.PROCESSED.value)
            self.circuits.record_success(hotel_id, channel)
            self._record(hotel_id, channel, monitoring.SUCCESS, response.duration_ms)
            await run_blocking(self._touch_config, config.id, None)
            ack()
            return

        error = outcome.error_code or "failed"
        await self.store.attach_response(payload_id, response, ProcessingStatus.FAILED.value, error=error)
        await run_blocking(self._touch_config, config.id, error)

        if not outcome.retryable:
            if outcome.auth_failed:
                self.circuits.record_failure(hotel_id, channel, error, force_open=True)
                self._record(hotel_id, channel, monitoring.AUTH, response.duration_ms)
                if self.alerts:
                    await run_blocking(
                        self.alerts.raise_alert,
                        AlertType.AUTH_FAILURE,
                        f"{channel} rejected credentials for hotel {hotel_id} ({error})",
                        AlertSeverity.CRITICAL,
                        channel,
                        hotel_id,
                        event.correlation_id,
                    )
            else:
                self.circuits.release_probe(hotel_id, channel)
                self._record(hotel_id, channel, monitoring.PERMANENT, response.duration_ms)
            logger.error(f"{channel} permanently rejected {event.kind} {event.id}: {error}")
            nack(reason=error, give_up=True)
            return

        self.circuits.record_failure(hotel_id, channel, error)
        category = monitoring.NETWORK if response.status is None else monitoring.RETRYABLE
        self._record(hotel_id, channel, category, response.duration_ms)

        delay = outcome.hint if outcome.hint is not None else self.backoff_delay(event.attempt_count)
        logger.warning(
            f"{channel} {event.kind} {event.id} attempt {event.attempt_count} failed ({error}), "
            f"retrying in {delay:.2f}s"
        )
        nack(delay, reason=error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, hotel_id: str, channel: str, outcome: str, latency_ms: Optional[float] = None):
        if self.monitor:
            self.monitor.record_send(hotel_id, channel, outcome, latency_ms)

    @staticmethod
    def _event_fields(data) -> Dict[str, Any]:
        fields = {
            "bookingId": getattr(data, "booking_id", None),
            "reservationId": getattr(data, "channel_reservation_id", None),
            "guestName": getattr(data, "guest_name", None),
            "roomType": getattr(data, "room_type", None),
            "rate": getattr(data, "rate", None),
            "available": getattr(data, "available", None),
            "amount": getattr(data, "total_amount", None) or getattr(data, "rate", None),
            "status": getattr(data, "status", None) or getattr(data, "state", None),
        }
        for name, attr in (("checkIn", "check_in"), ("checkOut", "check_out"), ("date", "date_from")):
            value = getattr(data, attr, None)
            if value is not None:
                fields[name] = value.isoformat()
        return {k: v for k, v in fields.items() if v is not None}

    def _load_config(self, hotel_id: str, channel: str) -> Optional[ChannelConfiguration]:
        db = self.session_factory()
        try:
            config = db.query(ChannelConfiguration).filter(
                ChannelConfiguration.hotel_id == hotel_id,
                ChannelConfiguration.channel == channel,
            ).first()
            if config is not None:
                db.expunge(config)
            return config
        finally:
            db.close()

    def _touch_config(self, config_id: str, error: Optional[str]):
        db = self.session_factory()
        try:
            config = db.get(ChannelConfiguration, config_id)
            if config is None:
                return
            if error:
                config.last_error = error
                config.error_count = (config.error_count or 0) + 1
            else:
                config.last_sync_at = self.clock.now()
                config.error_count = 0
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not update channel configuration {config_id}: {e}")
        finally:
            db.close()
