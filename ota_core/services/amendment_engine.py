"""
Amendment Engine

Drives OTA amendment requests through their lifecycle:

    pending -> auto_approved | approved | partially_approved | rejected | expired

- amendment.received is deduplicated by (channel, channel amendment id)
- business rules reject outright; policy reasons queue for manual review
- an approval emits booking.modified / booking.cancelled (never echoed to the
  requesting channel), then records the booking status transition
- every terminal state publishes amendment.decided back to the channel
- stop-sell.changed events are tracked for the auto-approve policy
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError as DBIntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    InvalidTransitionError,
    NotFoundError,
    OTACoreError,
    TransientError,
    ValidationError,
)
from ..models.amendment import (
    AMENDMENT_TRANSITIONS,
    Amendment,
    AmendmentState,
    AmendmentType,
    BookingStatusTransition,
    TransitionSource,
)
from ..models.audit_log import ActivityType, AuditLog, EntityType
from ..models.bus import EventKind
from ..models.channel_configuration import StopSellWindow
from ..utils.db_helpers import paginate_query, run_blocking
from .amendment_rules import (
    AmendmentPolicy,
    amendment_priority,
    can_change_status,
    evaluate,
    nights,
    parse_date,
)
from .booking_locks import BookingLocks, BookingLockTimeout
from .booking_snapshot import BookingSnapshot, BookingSnapshotReader

logger = logging.getLogger(__name__)

ENGINE_ORIGINATOR = "amendment-engine"

DECISION_ACTIONS = ("approve", "reject", "partial")

STATE_ACTIVITY = {
    AmendmentState.AUTO_APPROVED.value: ActivityType.AMENDMENT_AUTO_APPROVE,
    AmendmentState.APPROVED.value: ActivityType.AMENDMENT_APPROVE,
    AmendmentState.PARTIALLY_APPROVED.value: ActivityType.AMENDMENT_PARTIAL_APPROVE,
    AmendmentState.REJECTED.value: ActivityType.AMENDMENT_REJECT,
    AmendmentState.EXPIRED.value: ActivityType.AMENDMENT_EXPIRE,
}

PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


class AmendmentEngine:
    def __init__(self, bus, session_factory, clock, ids, snapshots: BookingSnapshotReader,
                 monitor=None, policy: Optional[AmendmentPolicy] = None,
                 ttl_hours: Optional[int] = None, locks: Optional[BookingLocks] = None):
        self.bus = bus
        self.session_factory = session_factory
        self.clock = clock
        self.ids = ids
        self.snapshots = snapshots
        self.monitor = monitor
        self.policy = policy or AmendmentPolicy.from_settings()
        self.ttl_hours = ttl_hours or settings.amendment_ttl_hours
        self.locks = locks or BookingLocks()

    def register(self):
        self.bus.subscribe(
            EventKind.AMENDMENT_RECEIVED.value,
            self._on_received,
            concurrency=settings.bus_worker_count,
            name="amendment-engine",
        )
        self.bus.subscribe(
            EventKind.STOP_SELL_CHANGED.value,
            self._on_stop_sell,
            name="stop-sell-tracker",
        )

    # ------------------------------------------------------------------
    # Bus handlers
    # ------------------------------------------------------------------

    async def _on_received(self, event, ack, nack):
        try:
            await self.receive(event.data, event.correlation_id)
        except TransientError as e:
            logger.warning(f"Amendment intake for event {event.id} deferred: {e.message}")
            nack(reason=e.code)
            return
        except ValidationError as e:
            logger.error(f"Amendment event {event.id} cannot be processed: {e.message}")
            nack(reason=e.code, give_up=True)
            return
        ack()

    async def _on_stop_sell(self, event, ack, nack):
        data = event.data
        try:
            await run_blocking(
                self._upsert_stop_sell_sync, data.hotel_id, data.room_type, data.dates, data.stop_sell,
                event.correlation_id,
            )
        except TransientError as e:
            nack(reason=e.code)
            return
        ack()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def receive(self, data, correlation_id: str) -> Dict[str, Any]:
        """
        Record an amendment request and run automatic decisions.

        Returns the amendment view. A repeated (channel, channel amendment id)
        returns the existing amendment without emitting anything, unless the
        earlier intake stopped before its automatic decision; that one is
        resumed.
        """
        existing = await run_blocking(self._find_view_sync, data.channel, data.channel_amendment_id)
        if existing and not self._intake_unfinished(existing):
            logger.info(f"Duplicate amendment {data.channel}/{data.channel_amendment_id} -> {existing['id']}")
            return existing

        snapshot = await self._snapshot(data.booking_id, data.channel, data.channel_reservation_id)
        booking_id = data.booking_id or (snapshot.booking_id if snapshot else None)
        hotel_id = data.hotel_id or (snapshot.hotel_id if snapshot else None)
        changes = dict(data.requested_changes)

        now = self.clock.now()
        stop_sell = await run_blocking(self._stop_sell_nights_sync, hotel_id, changes, snapshot)
        evaluation = evaluate(data.amendment_type, changes, snapshot, now, self.policy, stop_sell)
        conflicts = await run_blocking(
            self._pending_conflicts_sync, booking_id, data.amendment_type, changes,
            existing["id"] if existing else None,
        )
        for reason in conflicts:
            evaluation.review(reason)
        if data.requires_manual_approval:
            evaluation.review("channel_requested_review")

        if existing:
            logger.info(f"Resuming intake of amendment {existing['id']}")
            view = existing
        else:
            view, created = await run_blocking(
                self._create_sync, data, correlation_id, booking_id, hotel_id, snapshot, evaluation,
                amendment_priority(data.amendment_type, snapshot, now),
            )
            if not created:
                return view
            self._record(AmendmentState.PENDING.value)

        if evaluation.violations:
            violation = evaluation.violations[0]
            async with self.locks.hold(self._lock_key(view), settings.booking_lock_timeout_seconds):
                view = await self._reload(view["id"])
                if view["state"] != AmendmentState.PENDING.value:
                    return view
                logger.info(f"Amendment {view['id']} rejected by rule {violation.rule}")
                return await self._finish(view, AmendmentState.REJECTED.value, ENGINE_ORIGINATOR,
                                          TransitionSource.AUTOMATION.value, reason=violation.reason)

        if evaluation.auto_approvable:
            async with self.locks.hold(self._lock_key(view), settings.booking_lock_timeout_seconds):
                view = await self._reload(view["id"])
                if view["state"] != AmendmentState.PENDING.value:
                    return view
                return await self._apply(view, AmendmentState.AUTO_APPROVED.value, changes, snapshot,
                                         ENGINE_ORIGINATOR, TransitionSource.AUTOMATION.value)

        if not view["requiresManualApproval"]:
            view = await run_blocking(self._queue_for_review_sync, view["id"], evaluation.manual_reasons)
        logger.info(f"Amendment {view['id']} queued for review: {', '.join(evaluation.manual_reasons)}")
        return view

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def decide(self, amendment_id: str, action: str, actor: str, reason: Optional[str] = None,
                     approved_fields: Optional[List[str]] = None,
                     bypass_validation: bool = False) -> Dict[str, Any]:
        """
        Apply a reviewer decision to a pending amendment.

        approve/partial re-run the business rules against the current booking
        unless `bypass_validation`; a violation turns the decision into a
        rejection carrying the structured reason.
        """
        if action not in DECISION_ACTIONS:
            raise ValidationError(f"Unknown decision action: {action}", code="invalid_action")

        view = await self._reload(amendment_id)
        self._ensure_pending(view)

        async with self.locks.hold(self._lock_key(view), settings.booking_lock_timeout_seconds):
            # a concurrent decision may have finished while we waited
            view = await self._reload(amendment_id)
            self._ensure_pending(view)

            if action == "reject":
                return await self._finish(
                    view, AmendmentState.REJECTED.value, actor, TransitionSource.USER.value,
                    reason={"rule": "manual_rejection", "message": reason or "Rejected by reviewer"},
                )

            requested = view["requestedChanges"] or {}
            if action == "partial":
                if not approved_fields:
                    raise ValidationError("Partial approval needs approvedFields", code="partial_fields_missing")
                unknown = sorted(set(approved_fields) - set(requested))
                if unknown:
                    raise ValidationError(
                        f"Fields not requested by the amendment: {', '.join(unknown)}",
                        code="partial_fields_unknown",
                    )
                changes = {k: requested[k] for k in approved_fields}
                state = AmendmentState.PARTIALLY_APPROVED.value
            else:
                changes = dict(requested)
                state = AmendmentState.APPROVED.value

            snapshot = await self._snapshot(view["bookingId"], view["requestedBy"]["channel"],
                                            view["channelReservationId"])
            if not bypass_validation:
                stop_sell = await run_blocking(self._stop_sell_nights_sync, view["hotelId"], changes, snapshot)
                evaluation = evaluate(view["type"], changes, snapshot, self.clock.now(), self.policy, stop_sell)
                if evaluation.violations:
                    return await self._finish(view, AmendmentState.REJECTED.value, actor,
                                              TransitionSource.USER.value, reason=evaluation.violations[0].reason)
            else:
                logger.warning(f"Amendment {amendment_id} approved by {actor} with validation bypassed")

            return await self._apply(view, state, changes, snapshot, actor, TransitionSource.USER.value,
                                     bypass=bypass_validation, note=reason)

    async def bulk_decide(self, action: str, amendment_ids: List[str], actor: str,
                          reason: Optional[str] = None, bypass_validation: bool = False) -> List[Dict[str, Any]]:
        """One outcome per id; a failure on one id never stops the rest"""
        if action not in ("approve", "reject"):
            raise ValidationError("Bulk decisions support approve or reject", code="invalid_action")

        outcomes = []
        for amendment_id in amendment_ids:
            try:
                view = await self.decide(amendment_id, action, actor, reason=reason,
                                         bypass_validation=bypass_validation)
                outcomes.append({"amendmentId": amendment_id, "ok": True, "state": view["state"]})
            except OTACoreError as e:
                outcomes.append({
                    "amendmentId": amendment_id,
                    "ok": False,
                    "error": {"code": e.code, "message": e.message},
                })
        return outcomes

    async def expire_stale(self) -> int:
        """Expire pending amendments older than the TTL; returns how many"""
        cutoff = self.clock.now() - timedelta(hours=self.ttl_hours)
        stale = await run_blocking(self._stale_views_sync, cutoff)
        expired = 0
        for view in stale:
            try:
                async with self.locks.hold(self._lock_key(view), settings.booking_lock_timeout_seconds):
                    view = await self._reload(view["id"])
                    if view["state"] != AmendmentState.PENDING.value:
                        continue
                    await self._finish(
                        view, AmendmentState.EXPIRED.value, ENGINE_ORIGINATOR, TransitionSource.AUTOMATION.value,
                        reason={"rule": "expired", "message": f"No decision within {self.ttl_hours}h"},
                    )
                expired += 1
            except BookingLockTimeout:
                # being decided right now; the next sweep picks it up if still pending
                continue
            except InvalidTransitionError:
                # decided while the sweep was running
                continue
        if expired:
            logger.info(f"Expired {expired} stale amendments")
        return expired

    # ------------------------------------------------------------------
    # Manual booking status changes
    # ------------------------------------------------------------------

    async def change_booking_status(self, booking_id: str, new_status: str, actor: str,
                                    reason: Optional[str] = None, bypass_validation: bool = False,
                                    notify_channels: bool = True,
                                    correlation_id: Optional[str] = None) -> Dict[str, Any]:
        snapshot = await self.snapshots.get(booking_id)
        if snapshot is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if not snapshot.hotel_id:
            raise ValidationError(f"Booking {booking_id} has no hotel", code="hotel_unknown")

        if not bypass_validation and not can_change_status(snapshot.status, new_status):
            raise InvalidTransitionError(
                f"Booking cannot move from {snapshot.status} to {new_status}",
                details={"from": snapshot.status, "to": new_status},
            )

        kind = EventKind.BOOKING_CANCELLED.value if new_status == "cancelled" else EventKind.BOOKING_MODIFIED.value
        payload = {
            "hotel_id": snapshot.hotel_id,
            "booking_id": booking_id,
            "channel": snapshot.channel,
            "channel_reservation_id": snapshot.channel_reservation_id,
            "check_in": snapshot.check_in.isoformat() if snapshot.check_in else None,
            "check_out": snapshot.check_out.isoformat() if snapshot.check_out else None,
            "room_type": snapshot.room_type,
            "status": new_status,
            "notify_channels": notify_channels,
            "changes": {"status": new_status},
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        correlation_id = correlation_id or self.ids.correlation_id()

        async with self.locks.hold(f"booking:{booking_id}", settings.booking_lock_timeout_seconds):
            await self.bus.publish(kind, payload, correlation_id=correlation_id, originator=f"user:{actor}")
            return await run_blocking(
                self._record_status_change_sync, booking_id, snapshot.status, new_status, actor,
                reason, bypass_validation, correlation_id,
            )

    # ------------------------------------------------------------------
    # Reads (sync, take the request session)
    # ------------------------------------------------------------------

    def get(self, db: Session, amendment_id: str) -> Amendment:
        amendment = db.query(Amendment).filter(Amendment.amendment_id == amendment_id).first()
        if amendment is None:
            raise NotFoundError(f"Amendment {amendment_id} not found")
        return amendment

    def list_amendments(self, db: Session, state: Optional[str] = None, booking_id: Optional[str] = None,
                        channel: Optional[str] = None, page: int = 1,
                        limit: int = 50) -> Tuple[List[Amendment], int]:
        query = db.query(Amendment)
        if state:
            query = query.filter(Amendment.state == state)
        if booking_id:
            query = query.filter(Amendment.booking_id == booking_id)
        if channel:
            query = query.filter(Amendment.requested_by_channel == channel)
        return paginate_query(query.order_by(Amendment.requested_at.desc()), page, limit)

    def review_queue(self, db: Session, limit: int = 100) -> List[Amendment]:
        """Pending amendments needing a reviewer, most urgent first"""
        pending = db.query(Amendment).filter(
            Amendment.state == AmendmentState.PENDING.value,
            Amendment.requires_manual_approval.is_(True),
        ).all()

        def sort_key(a: Amendment):
            check_in = parse_date((a.original_snapshot or {}).get("checkIn")) or date.max
            return PRIORITY_RANK.get(a.priority, 2), check_in, a.requested_at

        return sorted(pending, key=sort_key)[:limit]

    def booking_transitions(self, db: Session, booking_id: str) -> List[BookingStatusTransition]:
        return db.query(BookingStatusTransition).filter(
            BookingStatusTransition.booking_id == booking_id
        ).order_by(BookingStatusTransition.created_at.asc()).all()

    @staticmethod
    def serialize(amendment: Amendment) -> Dict[str, Any]:
        return {
            "id": amendment.amendment_id,
            "channelAmendmentId": amendment.channel_amendment_id,
            "bookingId": amendment.booking_id,
            "channelReservationId": amendment.channel_reservation_id,
            "hotelId": amendment.hotel_id,
            "correlationId": amendment.correlation_id,
            "payloadId": amendment.payload_id,
            "type": amendment.amendment_type,
            "state": amendment.state,
            "stateHistory": amendment.state_history or [],
            "requestedChanges": amendment.requested_changes or {},
            "originalSnapshot": amendment.original_snapshot,
            "appliedChanges": amendment.applied_changes,
            "requestedBy": {
                "channel": amendment.requested_by_channel,
                "guestId": amendment.requested_by_guest_id,
                "timestamp": amendment.requested_at.isoformat() if amendment.requested_at else None,
            },
            "requiresManualApproval": amendment.requires_manual_approval,
            "manualApprovalReasons": amendment.manual_approval_reasons or [],
            "priority": amendment.priority,
            "decisionReason": amendment.decision_reason,
            "decidedAt": amendment.decided_at.isoformat() if amendment.decided_at else None,
            "decidedBy": amendment.decided_by,
            "validationBypassed": bool(amendment.validation_bypassed),
        }

    @staticmethod
    def serialize_transition(transition: BookingStatusTransition) -> Dict[str, Any]:
        return {
            "id": transition.id,
            "bookingId": transition.booking_id,
            "fromStatus": transition.from_status,
            "toStatus": transition.to_status,
            "reason": transition.reason,
            "source": transition.source,
            "actor": transition.actor,
            "correlationId": transition.correlation_id,
            "amendmentId": transition.amendment_id,
            "validationBypassed": bool(transition.validation_bypassed),
            "createdAt": transition.created_at.isoformat() if transition.created_at else None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_key(view: Dict[str, Any]) -> str:
        return f"booking:{view['bookingId']}" if view.get("bookingId") else f"amendment:{view['id']}"

    @staticmethod
    def _ensure_pending(view: Dict[str, Any]):
        if view["state"] != AmendmentState.PENDING.value:
            raise InvalidTransitionError(
                f"Amendment {view['id']} is already {view['state']}",
                details={"state": view["state"]},
            )

    @staticmethod
    def _intake_unfinished(view: Dict[str, Any]) -> bool:
        """Pending but never queued for review: the automatic decision did not complete"""
        return view["state"] == AmendmentState.PENDING.value and not view["requiresManualApproval"]

    async def _reload(self, amendment_id: str) -> Dict[str, Any]:
        return await run_blocking(self._get_view_sync, amendment_id)

    def _record(self, state: str):
        if self.monitor:
            self.monitor.record_amendment(state)

    async def _snapshot(self, booking_id: Optional[str], channel: Optional[str],
                        reservation_id: Optional[str]) -> Optional[BookingSnapshot]:
        try:
            if booking_id:
                return await self.snapshots.get(booking_id)
            if channel and reservation_id:
                return await self.snapshots.find_by_reservation(channel, reservation_id)
        except TransientError as e:
            logger.warning(f"Booking snapshot unavailable for {booking_id or reservation_id}: {e.message}")
        return None

    async def _apply(self, view: Dict[str, Any], state: str, changes: Dict[str, Any],
                     snapshot: Optional[BookingSnapshot], actor: str, source: str,
                     bypass: bool = False, note: Optional[str] = None) -> Dict[str, Any]:
        booking_id = view["bookingId"] or (snapshot.booking_id if snapshot else None)
        hotel_id = view["hotelId"] or (snapshot.hotel_id if snapshot else None)
        if not booking_id or not hotel_id:
            raise ValidationError(
                f"Amendment {view['id']} is not linked to a known booking", code="booking_unresolved"
            )

        channel = view["requestedBy"]["channel"]
        cancelling = view["type"] == AmendmentType.CANCELLATION_REQUEST.value
        kind = EventKind.BOOKING_CANCELLED.value if cancelling else EventKind.BOOKING_MODIFIED.value
        to_status = "cancelled" if cancelling else "modified"

        payload = {
            "hotel_id": hotel_id,
            "booking_id": booking_id,
            "channel": channel,
            "channel_reservation_id": view["channelReservationId"]
            or (snapshot.channel_reservation_id if snapshot else None),
            "status": to_status,
            "changes": changes,
        }
        merged = {**(snapshot.as_fields() if snapshot else {}), **changes}
        for field_name, key in (("check_in", "checkIn"), ("check_out", "checkOut"), ("room_type", "roomType"),
                                ("guest_name", "guestName"), ("total_amount", "totalAmount")):
            if merged.get(key) is not None:
                payload[field_name] = merged[key]
        payload = {k: v for k, v in payload.items() if v is not None}

        # Published as the requesting channel so it is not echoed back there
        await self.bus.publish(kind, payload, correlation_id=view["correlationId"], originator=f"channel:{channel}")

        transition = {
            "booking_id": booking_id,
            "from_status": snapshot.status if snapshot else None,
            "to_status": to_status,
            "reason": note or f"Amendment {view['id']} {state}",
        }
        return await self._finish(view, state, actor, source, applied_changes=changes,
                                  bypass=bypass, transition=transition)

    async def _finish(self, view: Dict[str, Any], state: str, actor: str, source: str,
                      reason: Optional[Dict[str, Any]] = None, applied_changes: Optional[Dict[str, Any]] = None,
                      bypass: bool = False, transition: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        result = await run_blocking(
            self._finalize_sync, view["id"], state, actor, source, reason, applied_changes, bypass, transition,
        )
        self._record(state)

        await self.bus.publish(
            EventKind.AMENDMENT_DECIDED.value,
            {
                "amendment_id": result["id"],
                "channel": result["requestedBy"]["channel"],
                "channel_amendment_id": result["channelAmendmentId"],
                "state": state,
                "booking_id": result["bookingId"],
                "hotel_id": result["hotelId"],
                "channel_reservation_id": result["channelReservationId"],
                "reason": reason,
            },
            correlation_id=result["correlationId"],
            originator=ENGINE_ORIGINATOR,
        )
        return result

    # -- sync session work ---------------------------------------------

    def _find_view_sync(self, channel: str, channel_amendment_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            amendment = db.query(Amendment).filter(
                Amendment.requested_by_channel == channel,
                Amendment.channel_amendment_id == channel_amendment_id,
            ).first()
            return self.serialize(amendment) if amendment else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up amendment {channel}/{channel_amendment_id}: {e}")
            raise TransientError("Amendment store unavailable", code="amendment_read_failed")
        finally:
            db.close()

    def _get_view_sync(self, amendment_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            return self.serialize(self.get(db, amendment_id))
        except SQLAlchemyError as e:
            logger.error(f"Failed to read amendment {amendment_id}: {e}")
            raise TransientError("Amendment store unavailable", code="amendment_read_failed")
        finally:
            db.close()

    def _queue_for_review_sync(self, amendment_id: str, reasons: List[str]) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            amendment = self.get(db, amendment_id)
            if amendment.state == AmendmentState.PENDING.value:
                amendment.requires_manual_approval = True
                amendment.manual_approval_reasons = list(reasons) or None
                db.commit()
            return self.serialize(amendment)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to queue amendment {amendment_id} for review: {e}")
            raise TransientError("Amendment store unavailable", code="amendment_write_failed")
        finally:
            db.close()

    def _stale_views_sync(self, cutoff) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            stale = db.query(Amendment).filter(
                Amendment.state == AmendmentState.PENDING.value,
                Amendment.requested_at < cutoff,
            ).order_by(Amendment.requested_at.asc()).all()
            return [self.serialize(a) for a in stale]
        finally:
            db.close()

    def _stop_sell_nights_sync(self, hotel_id: Optional[str], changes: Dict[str, Any],
                               snapshot: Optional[BookingSnapshot]) -> Set[date]:
        room_type = changes.get("roomType") or (snapshot.room_type if snapshot else None)
        check_in = parse_date(changes.get("checkIn")) or (snapshot.check_in if snapshot else None)
        check_out = parse_date(changes.get("checkOut")) or (snapshot.check_out if snapshot else None)
        if not hotel_id or not room_type or not check_in or not check_out or check_out <= check_in:
            return set()

        stay = nights(check_in, check_out)
        db = self.session_factory()
        try:
            rows = db.query(StopSellWindow.night).filter(
                StopSellWindow.hotel_id == hotel_id,
                StopSellWindow.room_type == room_type,
                StopSellWindow.stop_sell.is_(True),
                StopSellWindow.night >= stay[0],
                StopSellWindow.night <= stay[-1],
            ).all()
            return {row.night for row in rows}
        finally:
            db.close()

    def _pending_conflicts_sync(self, booking_id: Optional[str], amendment_type: str,
                                changes: Dict[str, Any], exclude_id: Optional[str] = None) -> List[str]:
        if not booking_id:
            return []
        db = self.session_factory()
        try:
            query = db.query(Amendment).filter(
                Amendment.booking_id == booking_id,
                Amendment.state == AmendmentState.PENDING.value,
            )
            if exclude_id:
                query = query.filter(Amendment.amendment_id != exclude_id)
            pending = query.all()
        finally:
            db.close()

        reasons = []
        for other in pending:
            if other.amendment_type == AmendmentType.CANCELLATION_REQUEST.value:
                reasons.append("pending_cancellation_conflict")
            elif amendment_type == AmendmentType.CANCELLATION_REQUEST.value \
                    or set(other.requested_changes or {}) & set(changes):
                reasons.append("conflicts_with_pending_amendment")
        return reasons

    def _create_sync(self, data, correlation_id: str, booking_id: Optional[str], hotel_id: Optional[str],
                     snapshot: Optional[BookingSnapshot], evaluation, priority: str) -> Tuple[Dict[str, Any], bool]:
        now = self.clock.now()
        db = self.session_factory()
        try:
            amendment = Amendment(
                amendment_id=self.ids.amendment_id(),
                channel_amendment_id=data.channel_amendment_id,
                booking_id=booking_id,
                channel_reservation_id=data.channel_reservation_id
                or (snapshot.channel_reservation_id if snapshot else None),
                hotel_id=hotel_id,
                correlation_id=correlation_id,
                payload_id=data.payload_id,
                amendment_type=data.amendment_type,
                state=AmendmentState.PENDING.value,
                state_history=[{"state": AmendmentState.PENDING.value, "at": now.isoformat()}],
                requested_changes=dict(data.requested_changes),
                original_snapshot=snapshot.as_fields() if snapshot else None,
                requested_by_channel=data.channel,
                requested_by_guest_id=data.guest_id,
                requested_at=now,
                requires_manual_approval=bool(evaluation.manual_reasons),
                manual_approval_reasons=list(evaluation.manual_reasons) or None,
                priority=priority,
                created_at=now,
            )
            db.add(amendment)
            db.commit()
            logger.info(
                f"Amendment {amendment.amendment_id} ({data.amendment_type}) received from {data.channel} "
                f"for booking {booking_id}"
            )
            return self.serialize(amendment), True
        except DBIntegrityError:
            db.rollback()
            existing = db.query(Amendment).filter(
                Amendment.requested_by_channel == data.channel,
                Amendment.channel_amendment_id == data.channel_amendment_id,
            ).first()
            if existing is None:
                raise
            return self.serialize(existing), False
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record amendment {data.channel}/{data.channel_amendment_id}: {e}")
            raise TransientError("Amendment store unavailable", code="amendment_write_failed")
        finally:
            db.close()

    def _finalize_sync(self, amendment_id: str, state: str, actor: str, source: str,
                       reason: Optional[Dict[str, Any]], applied_changes: Optional[Dict[str, Any]],
                       bypass: bool, transition: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = self.clock.now()
        db = self.session_factory()
        try:
            amendment = db.query(Amendment).filter(
                Amendment.amendment_id == amendment_id
            ).with_for_update().first()
            if amendment is None:
                raise NotFoundError(f"Amendment {amendment_id} not found")
            if state not in AMENDMENT_TRANSITIONS.get(amendment.state, set()):
                raise InvalidTransitionError(
                    f"Amendment {amendment_id} cannot move from {amendment.state} to {state}",
                    details={"state": amendment.state},
                )

            previous = amendment.state
            amendment.state = state
            amendment.state_history = list(amendment.state_history or []) + [
                {"state": state, "at": now.isoformat(), "actor": actor}
            ]
            amendment.decided_at = now
            amendment.decided_by = actor
            amendment.decision_reason = reason
            amendment.applied_changes = applied_changes
            amendment.validation_bypassed = bypass

            if transition:
                db.add(BookingStatusTransition(
                    booking_id=transition["booking_id"],
                    from_status=transition["from_status"],
                    to_status=transition["to_status"],
                    reason=transition["reason"],
                    source=source,
                    actor=actor,
                    correlation_id=amendment.correlation_id,
                    amendment_id=amendment.amendment_id,
                    validation_bypassed=bypass,
                    details={"appliedChanges": applied_changes},
                    created_at=now,
                ))

            AuditLog.log(
                db,
                STATE_ACTIVITY[state],
                EntityType.AMENDMENT,
                entity_id=amendment.amendment_id,
                actor_id=actor,
                description=f"Amendment {amendment.amendment_id} {previous} -> {state}",
                old_values={"state": previous},
                new_values={
                    "state": state,
                    "appliedChanges": applied_changes,
                    "reason": reason,
                    "validationBypassed": bypass,
                },
                correlation_id=amendment.correlation_id,
                created_at=now,
            )
            db.commit()
            logger.info(f"Amendment {amendment_id} -> {state} by {actor}")
            return self.serialize(amendment)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to finalize amendment {amendment_id}: {e}")
            raise TransientError("Amendment store unavailable", code="amendment_write_failed")
        finally:
            db.close()

    def _record_status_change_sync(self, booking_id: str, from_status: Optional[str], to_status: str,
                                   actor: str, reason: Optional[str], bypass: bool,
                                   correlation_id: str) -> Dict[str, Any]:
        now = self.clock.now()
        db = self.session_factory()
        try:
            transition = BookingStatusTransition(
                booking_id=booking_id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
                source=TransitionSource.USER.value,
                actor=actor,
                correlation_id=correlation_id,
                validation_bypassed=bypass,
                created_at=now,
            )
            db.add(transition)
            AuditLog.log(
                db,
                ActivityType.BOOKING_STATUS_CHANGE,
                EntityType.BOOKING,
                entity_id=booking_id,
                actor_id=actor,
                description=reason or f"Status {from_status} -> {to_status}",
                old_values={"status": from_status},
                new_values={"status": to_status, "validationBypassed": bypass},
                correlation_id=correlation_id,
                created_at=now,
            )
            db.commit()
            return self.serialize_transition(transition)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record status change for booking {booking_id}: {e}")
            raise TransientError("Transition store unavailable", code="transition_write_failed")
        finally:
            db.close()

    def _upsert_stop_sell_sync(self, hotel_id: str, room_type: str, dates: List[date], stop_sell: bool,
                               correlation_id: str):
        db = self.session_factory()
        try:
            existing = {
                row.night: row
                for row in db.query(StopSellWindow).filter(
                    StopSellWindow.hotel_id == hotel_id,
                    StopSellWindow.room_type == room_type,
                    StopSellWindow.night.in_(dates),
                ).all()
            }
            for night in dates:
                row = existing.get(night)
                if row is None:
                    db.add(StopSellWindow(hotel_id=hotel_id, room_type=room_type, night=night,
                                          stop_sell=stop_sell, correlation_id=correlation_id))
                else:
                    row.stop_sell = stop_sell
                    row.correlation_id = correlation_id
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record stop-sell for {hotel_id}/{room_type}: {e}")
            raise TransientError("Stop-sell store unavailable", code="stop_sell_write_failed")
        finally:
            db.close()
