"""
Event Bus

In-process publish/subscribe over a durable bus log:
- publish() persists the event and one delivery per matching subscription
  before returning (at-least-once)
- each subscription owns N partitions; events hash to a partition by
  correlation id and a partition is drained by exactly one worker, which
  keeps per-correlation FIFO
- nack(delay) re-enqueues with visible-after; after max attempts the
  delivery is dead-lettered and ops are alerted
- deadlines: a delivery whose deadline passes while queued is failed
  without invoking the handler
- back-pressure: publish raises TransientError above the partition
  high-water mark

Backoff policy belongs to the caller (the dispatcher); the bus only applies
the delay it is given, or the default delay when a handler throws.
"""

import asyncio
import fnmatch
import logging
import zlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..errors import NotFoundError, TransientError, ValidationError
from ..models.bus import BusDelivery, BusEvent, DeadLetterEvent, DeliveryStatus
from ..models.integration_alert import AlertSeverity, AlertType
from ..schemas.events import validate_event_payload
from ..utils.db_helpers import run_blocking
from ..utils.logging_config import correlation_id_var

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """The in-bus unit handed to subscribers."""
    id: str
    correlation_id: str
    kind: str
    payload: Dict[str, Any]
    originator: str
    timestamp: datetime
    hotel_id: Optional[str] = None
    attempt_count: int = 0
    visible_after: Optional[datetime] = None
    deadline_seconds: Optional[float] = None
    # monotonic deadline of the current attempt
    deadline_at: Optional[float] = None
    _data: Any = field(default=None, repr=False, compare=False)

    @property
    def data(self):
        """Validated payload model for this kind"""
        if self._data is None:
            self._data = validate_event_payload(self.kind, self.payload)
        return self._data


Handler = Callable[[Event, Callable[[], None], Callable[..., None]], Awaitable[None]]


class _Outcome:
    """Collects the single ack / nack decision for one attempt."""

    def __init__(self):
        self.decided = False
        self.acked = False
        self.delay: Optional[float] = None
        self.consume_attempt = True
        self.give_up = False
        self.reason: Optional[str] = None

    def ack(self):
        self._decide()
        self.acked = True

    def nack(self, delay: Optional[float] = None, *, reason: Optional[str] = None,
             consume_attempt: bool = True, give_up: bool = False):
        self._decide()
        self.delay = delay
        self.reason = reason
        self.consume_attempt = consume_attempt
        self.give_up = give_up

    def _decide(self):
        if self.decided:
            raise RuntimeError("ack/nack already called for this attempt")
        self.decided = True


@dataclass
class _Delivery:
    delivery_id: int
    event: Event
    attempt_count: int
    max_attempts: int
    ready_at: float
    deadline_at: Optional[float] = None


class _Partition:
    """FIFO queue with head re-insertion for ordered retries."""

    def __init__(self):
        self._items: deque = deque()
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._items)

    def push(self, delivery: _Delivery):
        self._items.append(delivery)
        self._ready.set()

    def push_front(self, delivery: _Delivery):
        self._items.appendleft(delivery)
        self._ready.set()

    async def get(self) -> _Delivery:
        while not self._items:
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def drain(self) -> List[_Delivery]:
        items = list(self._items)
        self._items.clear()
        return items


class Subscription:
    def __init__(self, name: str, pattern: str, handler: Handler, concurrency: int,
                 max_attempts: int, ordered: bool, deadline_seconds: Optional[float]):
        self.name = name
        self.pattern = pattern
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.ordered = ordered
        self.deadline_seconds = deadline_seconds
        self.partitions = [_Partition() for _ in range(self.concurrency)]
        self.tasks: List[asyncio.Task] = []
        self.busy: List[bool] = [False] * self.concurrency
        self.delayed = 0

    def matches(self, kind: str) -> bool:
        return any(fnmatch.fnmatchcase(kind, p.strip()) for p in self.pattern.split("|"))

    def partition_for(self, correlation_id: str) -> int:
        return zlib.crc32(correlation_id.encode("utf-8")) % self.concurrency

    @property
    def depth(self) -> int:
        return sum(len(p) for p in self.partitions) + self.delayed

    def __repr__(self):
        return f"<Subscription {self.name} pattern={self.pattern} partitions={self.concurrency}>"


class EventBus:
    """
    Durable in-process event bus.

    Args:
        session_factory: SQLAlchemy session factory for the bus log
        clock / ids: injected time and id sources
        alerts: AlertService used when dead-lettering
        high_water: max queued deliveries per partition before publish rejects
        default_retry_delay: delay applied when a handler throws
        dead_letter_capacity: oldest dead letters are pruned beyond this
    """

    def __init__(self, session_factory, clock, ids, alerts=None, high_water: int = 10_000,
                 default_retry_delay: float = 5.0, dead_letter_capacity: int = 50_000,
                 default_deadline_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.ids = ids
        self.alerts = alerts
        self.high_water = high_water
        self.default_retry_delay = default_retry_delay
        self.dead_letter_capacity = dead_letter_capacity
        self.default_deadline_seconds = default_deadline_seconds

        self._subscriptions: Dict[str, Subscription] = {}
        self._known_deliveries: set = set()
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._stopping = False
        self._listeners: List[Callable[[Event], None]] = []
        self._dead_letter_listeners: List[Callable[[str, Event], None]] = []

    # ------------------------------------------------------------------
    # Subscription / lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, pattern: str, handler: Handler, concurrency: int = 1, max_attempts: int = 5,
                  name: Optional[str] = None, ordered: bool = True,
                  deadline_seconds: Optional[float] = None) -> Subscription:
        """
        Register a handler for kinds matching `pattern` (fnmatch, `|` separated).

        The handler is called with (event, ack, nack) and must call exactly one
        of them; raising counts as nack with the default delay.
        """
        name = name or f"{pattern}:{getattr(handler, '__qualname__', 'handler')}"
        if name in self._subscriptions:
            raise ValueError(f"Subscription {name} already registered")

        subscription = Subscription(
            name=name,
            pattern=pattern,
            handler=handler,
            concurrency=concurrency,
            max_attempts=max_attempts,
            ordered=ordered,
            deadline_seconds=deadline_seconds if deadline_seconds is not None else self.default_deadline_seconds,
        )
        self._subscriptions[name] = subscription
        if self._running:
            self._start_workers(subscription)
        logger.info(f"Bus subscription registered: {subscription}")
        return subscription

    def add_listener(self, listener: Callable[[Event], None]):
        """Synchronous observer called for every published event (metrics)"""
        self._listeners.append(listener)

    def add_dead_letter_listener(self, listener: Callable[[str, Event], None]):
        """Called with (subscription name, event) after a delivery is dead-lettered"""
        self._dead_letter_listeners.append(listener)

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Reload pending deliveries from the bus log and start workers"""
        if self._running:
            return
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._ensure_idle_event()

        recovered = await run_blocking(self._load_pending_sync)
        for delivery_row, event in recovered:
            subscription = self._subscriptions.get(delivery_row["subscription"])
            if subscription is None or delivery_row["id"] in self._known_deliveries:
                continue
            delay = max(0.0, (delivery_row["visible_after"] - self.clock.now()).total_seconds())
            self._enqueue_memory(
                subscription,
                event,
                delivery_row["id"],
                attempt_count=delivery_row["attempt_count"],
                max_attempts=delivery_row["max_attempts"],
                delay=delay,
            )
        if recovered:
            logger.info(f"Event bus recovered {len(recovered)} pending deliveries")

        self._running = True
        for subscription in self._subscriptions.values():
            self._start_workers(subscription)
        logger.info(f"Event bus started with {len(self._subscriptions)} subscriptions")

    async def stop(self, grace: float = 10.0):
        """
        Cooperative shutdown: stop pulling, let in-flight handlers finish
        within `grace`, then cancel; unfinished deliveries stay pending in
        the bus log and are reloaded by the next start().
        """
        if not self._running:
            return
        self._stopping = True
        self._stop_event.set()

        all_tasks = []
        for subscription in self._subscriptions.values():
            for index, task in enumerate(subscription.tasks):
                if not subscription.busy[index]:
                    task.cancel()
                all_tasks.append(task)

        if all_tasks:
            done, still_running = await asyncio.wait(all_tasks, timeout=grace)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*all_tasks, return_exceptions=True)

        for subscription in self._subscriptions.values():
            subscription.tasks = []
            for partition in subscription.partitions:
                for delivery in partition.drain():
                    self._known_deliveries.discard(delivery.delivery_id)
            subscription.delayed = 0
        self._change_pending(-self._pending)
        self._running = False
        logger.info("Event bus stopped")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no delivery is queued, delayed or in flight"""
        self._ensure_idle_event()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def queue_depth(self, subscription: Optional[str] = None) -> int:
        if subscription:
            sub = self._subscriptions.get(subscription)
            return sub.depth if sub else 0
        return sum(sub.depth for sub in self._subscriptions.values())

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, kind: str, payload: Dict[str, Any], correlation_id: Optional[str] = None,
                      originator: str = "system", deadline_seconds: Optional[float] = None) -> str:
        """
        Validate, persist and enqueue an event. Returns the event id.

        Raises ValidationError for a payload that does not match its kind,
        TransientError when the bus log write fails or a partition is
        above its high-water mark.
        """
        model = validate_event_payload(kind, payload)
        normalized = model.model_dump(mode="json", exclude_none=True)

        event = Event(
            id=self.ids.event_id(),
            correlation_id=correlation_id or correlation_id_var.get() or self.ids.correlation_id(),
            kind=kind,
            payload=normalized,
            originator=originator,
            timestamp=self.clock.now(),
            hotel_id=normalized.get("hotel_id"),
            deadline_seconds=deadline_seconds,
            _data=model,
        )

        targets = [s for s in self._subscriptions.values() if s.matches(kind)]
        await self._enqueue(event, targets)

        for listener in self._listeners:
            listener(event)

        logger.debug(f"Published {kind} event {event.id} (correlation {event.correlation_id}) to {len(targets)} subscriptions")
        return event.id

    async def _enqueue(self, event: Event, targets: List[Subscription]):
        if not targets:
            return

        for subscription in targets:
            partition = subscription.partitions[subscription.partition_for(event.correlation_id)]
            if len(partition) >= self.high_water:
                raise TransientError(
                    f"Bus back-pressure on {subscription.name}: partition depth {len(partition)}",
                    code="bus_backpressure",
                )

        try:
            delivery_ids = await run_blocking(self._persist_sync, event, targets)
        except SQLAlchemyError as e:
            logger.error(f"Bus log write failed for {event.kind} {event.id}: {e}")
            raise TransientError("Event could not be persisted", code="bus_write_failed")

        for subscription, delivery_id in zip(targets, delivery_ids):
            self._enqueue_memory(subscription, event, delivery_id, attempt_count=0,
                                 max_attempts=subscription.max_attempts, delay=0.0)

    def _persist_sync(self, event: Event, targets: List[Subscription]) -> List[int]:
        db = self.session_factory()
        try:
            row = BusEvent(
                id=event.id,
                correlation_id=event.correlation_id,
                kind=event.kind,
                payload=event.payload,
                originator=event.originator,
                hotel_id=event.hotel_id,
                deadline_seconds=event.deadline_seconds,
                created_at=event.timestamp,
            )
            db.add(row)
            deliveries = []
            for subscription in targets:
                delivery = BusDelivery(
                    event_id=event.id,
                    subscription=subscription.name,
                    partition=subscription.partition_for(event.correlation_id),
                    status=DeliveryStatus.PENDING.value,
                    attempt_count=0,
                    max_attempts=subscription.max_attempts,
                    visible_after=event.timestamp,
                    created_at=event.timestamp,
                )
                db.add(delivery)
                deliveries.append(delivery)
            db.commit()
            return [d.id for d in deliveries]
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _enqueue_memory(self, subscription: Subscription, event: Event, delivery_id: int,
                        attempt_count: int, max_attempts: int, delay: float):
        now = self.clock.monotonic()
        delivery = _Delivery(
            delivery_id=delivery_id,
            event=event,
            attempt_count=attempt_count,
            max_attempts=max_attempts,
            ready_at=now + delay,
        )
        self._set_deadline(subscription, delivery)
        self._known_deliveries.add(delivery_id)
        self._change_pending(+1)
        subscription.partitions[subscription.partition_for(event.correlation_id)].push(delivery)

    def _set_deadline(self, subscription: Subscription, delivery: _Delivery):
        seconds = delivery.event.deadline_seconds or subscription.deadline_seconds
        delivery.deadline_at = delivery.ready_at + seconds if seconds else None

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _start_workers(self, subscription: Subscription):
        subscription.tasks = [
            asyncio.create_task(self._worker(subscription, index), name=f"bus:{subscription.name}:{index}")
            for index in range(subscription.concurrency)
        ]

    async def _worker(self, subscription: Subscription, index: int):
        partition = subscription.partitions[index]
        while not self._stopping:
            delivery = await partition.get()

            wait = delivery.ready_at - self.clock.monotonic()
            if wait > 0:
                if not subscription.ordered:
                    subscription.delayed += 1
                    asyncio.get_running_loop().call_later(wait, self._release_delayed, subscription, partition, delivery)
                    continue
                if await self._sleep_or_stop(wait):
                    partition.push_front(delivery)
                    break

            subscription.busy[index] = True
            try:
                await self._deliver(subscription, delivery)
            finally:
                subscription.busy[index] = False

    def _release_delayed(self, subscription: Subscription, partition: _Partition, delivery: _Delivery):
        subscription.delayed -= 1
        if not self._stopping:
            partition.push(delivery)

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Sleep, waking early on shutdown. Returns True if stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _deliver(self, subscription: Subscription, delivery: _Delivery):
        event = delivery.event

        if delivery.deadline_at is not None and self.clock.monotonic() > delivery.deadline_at:
            logger.warning(f"Deadline elapsed in queue for {event.kind} {event.id} on {subscription.name}")
            await self._dead_letter(subscription, delivery, "deadline_exceeded", "deadline elapsed before dispatch")
            return

        delivery.attempt_count += 1
        event.attempt_count = delivery.attempt_count
        event.deadline_at = delivery.deadline_at
        await run_blocking(self._mark_in_flight_sync, delivery)

        outcome = _Outcome()
        token = correlation_id_var.set(event.correlation_id)
        try:
            await subscription.handler(event, outcome.ack, outcome.nack)
        except asyncio.CancelledError:
            # Force-cancelled at shutdown: hand the attempt back
            self._release_sync(delivery, consume_attempt=False)
            raise
        except Exception as e:
            logger.exception(f"Handler {subscription.name} failed on {event.kind} {event.id}: {e}")
            if not outcome.decided:
                outcome.nack(None, reason=f"handler_error: {type(e).__name__}")
        finally:
            correlation_id_var.reset(token)

        if not outcome.decided:
            logger.warning(f"Handler {subscription.name} returned without ack/nack for {event.id}")
            outcome.nack(None, reason="no_decision")

        if outcome.acked:
            await run_blocking(self._delete_delivery_sync, delivery)
            self._finish(delivery)
            return

        if not outcome.consume_attempt:
            delivery.attempt_count -= 1

        if outcome.give_up:
            await self._dead_letter(subscription, delivery, "permanent_failure", outcome.reason)
            return

        if outcome.consume_attempt and delivery.attempt_count >= delivery.max_attempts:
            await self._dead_letter(subscription, delivery, "max_attempts_exceeded", outcome.reason)
            return

        delay = outcome.delay if outcome.delay is not None else self.default_retry_delay
        delivery.ready_at = self.clock.monotonic() + max(0.0, delay)
        self._set_deadline(subscription, delivery)
        event.visible_after = self.clock.now() + timedelta(seconds=max(0.0, delay))
        await run_blocking(self._reschedule_sync, delivery, event.visible_after, outcome.reason)

        partition = subscription.partitions[subscription.partition_for(event.correlation_id)]
        if subscription.ordered:
            partition.push_front(delivery)
        else:
            partition.push(delivery)

    def _finish(self, delivery: _Delivery):
        self._known_deliveries.discard(delivery.delivery_id)
        self._change_pending(-1)

    def _ensure_idle_event(self):
        if self._idle is None:
            self._idle = asyncio.Event()
            if self._pending == 0:
                self._idle.set()

    def _change_pending(self, delta: int):
        self._ensure_idle_event()
        self._pending = max(0, self._pending + delta)
        if self._pending == 0:
            self._idle.set()
        else:
            self._idle.clear()

    # ------------------------------------------------------------------
    # Bus log bookkeeping
    # ------------------------------------------------------------------

    def _mark_in_flight_sync(self, delivery: _Delivery):
        db = self.session_factory()
        try:
            row = db.get(BusDelivery, delivery.delivery_id)
            if row:
                row.status = DeliveryStatus.IN_FLIGHT.value
                row.attempt_count = delivery.attempt_count
                row.updated_at = self.clock.now()
                db.commit()
        finally:
            db.close()

    def _release_sync(self, delivery: _Delivery, consume_attempt: bool):
        if not consume_attempt:
            delivery.attempt_count -= 1
        db = self.session_factory()
        try:
            row = db.get(BusDelivery, delivery.delivery_id)
            if row:
                row.status = DeliveryStatus.PENDING.value
                row.attempt_count = delivery.attempt_count
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not release delivery {delivery.delivery_id}: {e}")
        finally:
            db.close()

    def _reschedule_sync(self, delivery: _Delivery, visible_after: datetime, error: Optional[str]):
        db = self.session_factory()
        try:
            row = db.get(BusDelivery, delivery.delivery_id)
            if row:
                row.status = DeliveryStatus.PENDING.value
                row.attempt_count = delivery.attempt_count
                row.visible_after = visible_after
                row.last_error = error
                row.updated_at = self.clock.now()
                db.commit()
        finally:
            db.close()

    def _delete_delivery_sync(self, delivery: _Delivery):
        db = self.session_factory()
        try:
            self._remove_delivery(db, delivery)
            db.commit()
        finally:
            db.close()

    def _remove_delivery(self, db, delivery: _Delivery):
        row = db.get(BusDelivery, delivery.delivery_id)
        if row:
            db.delete(row)
            db.flush()
        remaining = db.query(BusDelivery).filter(BusDelivery.event_id == delivery.event.id).count()
        if remaining == 0:
            event_row = db.get(BusEvent, delivery.event.id)
            if event_row:
                db.delete(event_row)

    async def _dead_letter(self, subscription: Subscription, delivery: _Delivery, reason: str,
                           error: Optional[str]):
        await run_blocking(self._dead_letter_sync, subscription, delivery, reason, error)
        self._finish(delivery)
        for listener in self._dead_letter_listeners:
            listener(subscription.name, delivery.event)

    def _dead_letter_sync(self, subscription: Subscription, delivery: _Delivery, reason: str,
                          error: Optional[str]):
        event = delivery.event
        db = self.session_factory()
        try:
            entry = DeadLetterEvent(
                event_id=event.id,
                correlation_id=event.correlation_id,
                kind=event.kind,
                subscription=subscription.name,
                payload=event.payload,
                originator=event.originator,
                hotel_id=event.hotel_id,
                attempts=delivery.attempt_count,
                reason=reason,
                last_error=error,
                created_at=self.clock.now(),
            )
            db.add(entry)
            self._remove_delivery(db, delivery)
            db.commit()
            self._prune_dead_letters(db)
            dead_letter_id = entry.id
        finally:
            db.close()

        logger.error(
            f"Dead-lettered {event.kind} {event.id} on {subscription.name} "
            f"after {delivery.attempt_count} attempts ({reason})"
        )
        if self.alerts:
            self.alerts.raise_alert(
                AlertType.DEAD_LETTER,
                f"{event.kind} dead-lettered on {subscription.name}: {reason}",
                severity=AlertSeverity.HIGH,
                hotel_id=event.hotel_id,
                correlation_id=event.correlation_id,
                details={"dead_letter_id": dead_letter_id, "event_id": event.id, "error": error},
            )

    def _prune_dead_letters(self, db):
        total = db.query(DeadLetterEvent).count()
        overflow = total - self.dead_letter_capacity
        if overflow <= 0:
            return
        oldest = (
            db.query(DeadLetterEvent.id)
            .order_by(DeadLetterEvent.created_at.asc())
            .limit(overflow)
            .all()
        )
        db.query(DeadLetterEvent).filter(
            DeadLetterEvent.id.in_([row.id for row in oldest])
        ).delete(synchronize_session=False)
        db.commit()
        logger.warning(f"Dead-letter capacity reached, pruned {overflow} oldest entries")

    def _load_pending_sync(self):
        db = self.session_factory()
        try:
            rows = (
                db.query(BusDelivery, BusEvent)
                .join(BusEvent, BusEvent.id == BusDelivery.event_id)
                .order_by(BusDelivery.id.asc())
                .all()
            )
            recovered = []
            for delivery, event_row in rows:
                if delivery.status == DeliveryStatus.IN_FLIGHT.value:
                    delivery.status = DeliveryStatus.PENDING.value
                recovered.append((
                    {
                        "id": delivery.id,
                        "subscription": delivery.subscription,
                        "attempt_count": delivery.attempt_count,
                        "max_attempts": delivery.max_attempts,
                        "visible_after": delivery.visible_after,
                    },
                    Event(
                        id=event_row.id,
                        correlation_id=event_row.correlation_id,
                        kind=event_row.kind,
                        payload=event_row.payload,
                        originator=event_row.originator,
                        timestamp=event_row.created_at,
                        hotel_id=event_row.hotel_id,
                        attempt_count=delivery.attempt_count,
                        visible_after=delivery.visible_after,
                        deadline_seconds=event_row.deadline_seconds,
                    ),
                ))
            db.commit()
            return recovered
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Dead-letter admin
    # ------------------------------------------------------------------

    def list_dead_letters(self, kind: Optional[str] = None, correlation_id: Optional[str] = None,
                          limit: int = 100) -> List[DeadLetterEvent]:
        db = self.session_factory()
        try:
            query = db.query(DeadLetterEvent)
            if kind:
                query = query.filter(DeadLetterEvent.kind == kind)
            if correlation_id:
                query = query.filter(DeadLetterEvent.correlation_id == correlation_id)
            rows = query.order_by(DeadLetterEvent.created_at.desc()).limit(limit).all()
            db.expunge_all()
            return rows
        finally:
            db.close()

    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        """
        Re-deliver a dead-lettered event to the subscription that gave up
        on it, under the same correlation id. Returns the new event id.
        """
        entry = await run_blocking(self._get_dead_letter_sync, dead_letter_id)
        if entry is None:
            raise NotFoundError(f"Dead letter {dead_letter_id} not found")

        subscription = self._subscriptions.get(entry["subscription"])
        if subscription is None:
            raise ValidationError(f"Subscription {entry['subscription']} is not registered")

        event = Event(
            id=self.ids.event_id(),
            correlation_id=entry["correlation_id"],
            kind=entry["kind"],
            payload=entry["payload"],
            originator=entry["originator"] or "replay",
            timestamp=self.clock.now(),
            hotel_id=entry["hotel_id"],
        )
        await self._enqueue(event, [subscription])
        await run_blocking(self._mark_replayed_sync, dead_letter_id, event.id)
        logger.info(f"Replayed dead letter {dead_letter_id} as event {event.id}")
        return event.id

    def _get_dead_letter_sync(self, dead_letter_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            entry = db.get(DeadLetterEvent, dead_letter_id)
            if entry is None:
                return None
            return {
                "subscription": entry.subscription,
                "correlation_id": entry.correlation_id,
                "kind": entry.kind,
                "payload": entry.payload,
                "originator": entry.originator,
                "hotel_id": entry.hotel_id,
            }
        finally:
            db.close()

    def _mark_replayed_sync(self, dead_letter_id: str, event_id: str):
        db = self.session_factory()
        try:
            entry = db.get(DeadLetterEvent, dead_letter_id)
            if entry:
                entry.replayed_at = self.clock.now()
                entry.replayed_event_id = event_id
                db.commit()
        finally:
            db.close()
