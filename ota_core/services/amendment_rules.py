"""
Amendment rules

Pure functions used by the amendment engine and the inbound pipeline:
- extract the requested changes from an OTA body and infer the amendment type
- evaluate business rules (hard violations) and the auto-approve policy
  (soft reasons that force manual review)
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from ..config import settings
from ..errors import BusinessRuleError
from ..models.amendment import AmendmentType

# Normalized change key -> inbound aliases, first hit wins
CHANGE_ALIASES = {
    "checkIn": ("new_check_in", "newCheckIn", "new_arrival_date", "check_in", "checkIn", "arrival_date"),
    "checkOut": ("new_check_out", "newCheckOut", "new_departure_date", "check_out", "checkOut", "departure_date"),
    "roomType": ("new_room_type", "newRoomType", "room_type", "roomType"),
    "totalAmount": ("new_total_amount", "newTotalAmount", "new_rate", "newRate", "total_amount", "totalAmount"),
    "guestName": ("new_guest_name", "guest_name", "guestName"),
    "guestEmail": ("new_guest_email", "guest_email", "guestEmail", "email"),
    "guestPhone": ("new_guest_phone", "guest_phone", "guestPhone", "phone"),
    "guests": ("new_guests", "number_of_guests", "numberOfGuests", "guests"),
    "specialRequests": ("special_requests", "specialRequests"),
}

DATE_KEYS = {"checkIn", "checkOut"}
GUEST_KEYS = {"guestName", "guestEmail", "guestPhone", "guests"}
CONTACT_KEYS = {"guestEmail", "guestPhone"}

CANCELLATION_MARKERS = {"cancel", "cancellation", "cancellation_request", "booking.cancelled", "reservation_cancelled"}

AUTO_APPROVABLE_TYPES = {
    AmendmentType.DATES_CHANGE.value,
    AmendmentType.RATE_CHANGE.value,
    AmendmentType.GUEST_DETAILS_CHANGE.value,
    AmendmentType.SPECIAL_REQUEST_CHANGE.value,
    AmendmentType.BOOKING_MODIFICATION.value,
}

NON_AMENDABLE_STATUSES = {"cancelled", "checked_out", "no_show"}


@dataclass
class AmendmentPolicy:
    max_date_shift_days: int = 7
    max_rate_delta_percent: float = 10.0
    review_rate_delta_percent: float = 20.0
    modification_cutoff_hours: int = 2
    date_change_review_hours: int = 24

    @classmethod
    def from_settings(cls) -> "AmendmentPolicy":
        return cls(
            max_date_shift_days=settings.auto_approve_max_date_shift_days,
            max_rate_delta_percent=settings.auto_approve_max_rate_delta_percent,
        )


@dataclass
class RuleEvaluation:
    violations: List[BusinessRuleError] = field(default_factory=list)
    manual_reasons: List[str] = field(default_factory=list)
    date_shift_days: Optional[int] = None
    rate_delta_percent: Optional[float] = None

    @property
    def auto_approvable(self) -> bool:
        return not self.violations and not self.manual_reasons

    def violate(self, rule: str, message: str, **details):
        self.violations.append(BusinessRuleError(message, rule=rule, details=details))

    def review(self, reason: str):
        if reason not in self.manual_reasons:
            self.manual_reasons.append(reason)


def _lookup(data: Dict[str, Any], aliases: Iterable[str]) -> Any:
    for alias in aliases:
        if data.get(alias) not in (None, ""):
            return data[alias]
    return None


def _is_new_key(key: str) -> bool:
    return key.startswith("new_") or (key.startswith("new") and key[3:4].isupper())


def extract_requested_changes(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalized change set from an OTA amendment body.

    An explicit `changes` object wins; otherwise when the body carries any
    `new_*` keys only those count, so unchanged booking fields are not
    mistaken for requested changes.
    """
    if isinstance(body.get("changes"), dict):
        source, only_new = body["changes"], False
    else:
        source = body
        only_new = any(_is_new_key(str(k)) for k in body)

    changes = {}
    for key, aliases in CHANGE_ALIASES.items():
        if only_new:
            aliases = [a for a in aliases if _is_new_key(a)]
        value = _lookup(source, aliases)
        if value is not None:
            changes[key] = value
    return changes


def infer_amendment_type(body: Dict[str, Any], changes: Dict[str, Any], operation_hint: Optional[str] = None) -> str:
    declared = str(body.get("amendment_type") or body.get("type") or "").lower()
    if declared in {t.value for t in AmendmentType}:
        return declared

    markers = {str(body.get(k, "")).lower() for k in ("event", "event_type", "action", "status")}
    markers.add((operation_hint or "").lower())
    if markers & CANCELLATION_MARKERS:
        return AmendmentType.CANCELLATION_REQUEST.value

    keys = set(changes)
    if not keys:
        return AmendmentType.BOOKING_MODIFICATION.value
    if keys <= DATE_KEYS:
        return AmendmentType.DATES_CHANGE.value
    if keys == {"totalAmount"}:
        return AmendmentType.RATE_CHANGE.value
    if keys == {"roomType"}:
        return AmendmentType.ROOM_CHANGE.value
    if keys <= GUEST_KEYS:
        return AmendmentType.GUEST_DETAILS_CHANGE.value
    if keys == {"specialRequests"}:
        return AmendmentType.SPECIAL_REQUEST_CHANGE.value
    return AmendmentType.BOOKING_MODIFICATION.value


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def nights(check_in: date, check_out: date) -> List[date]:
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]


def evaluate(amendment_type: str, changes: Dict[str, Any], snapshot, now: datetime,
             policy: AmendmentPolicy, stop_sell_nights: Optional[Set[date]] = None) -> RuleEvaluation:
    """
    Business rules + auto-approve policy for one amendment.

    `snapshot` is the current booking (BookingSnapshot) or None when the
    booking store could not be read; `stop_sell_nights` are the closed nights
    for the relevant room type.
    """
    result = RuleEvaluation()
    stop_sell_nights = stop_sell_nights or set()
    is_cancellation = amendment_type == AmendmentType.CANCELLATION_REQUEST.value

    if snapshot is None:
        result.review("booking_snapshot_unavailable")
        return result

    status = (snapshot.status or "").lower()
    if status in NON_AMENDABLE_STATUSES:
        result.violate("booking_not_amendable", f"Booking is {status} and cannot be amended", status=status)
        return result

    arrival = datetime.combine(snapshot.check_in, time(14, 0)) if snapshot.check_in else None
    hours_to_arrival = (arrival - now).total_seconds() / 3600 if arrival else None

    if not is_cancellation and hours_to_arrival is not None and hours_to_arrival < policy.modification_cutoff_hours \
            and status != "checked_in":
        result.violate(
            "modification_window_closed",
            f"Modifications close {policy.modification_cutoff_hours}h before check-in",
            hoursToArrival=round(hours_to_arrival, 1),
        )
        return result

    if is_cancellation:
        result.review("cancellation_requires_review")
        return result

    if amendment_type not in AUTO_APPROVABLE_TYPES:
        result.review(f"{amendment_type}_requires_review")

    if DATE_KEYS & set(changes):
        _evaluate_dates(result, changes, snapshot, now, policy, stop_sell_nights, status, hours_to_arrival)
    if "totalAmount" in changes:
        _evaluate_rate(result, changes, snapshot, policy)
    if "roomType" in changes:
        _evaluate_room(result, changes, snapshot, stop_sell_nights)
    if CONTACT_KEYS & set(changes):
        result.review("contact_details_change")

    return result


def _evaluate_dates(result: RuleEvaluation, changes, snapshot, now: datetime, policy: AmendmentPolicy,
                    stop_sell_nights: Set[date], status: str, hours_to_arrival: Optional[float]):
    new_in = parse_date(changes.get("checkIn")) or snapshot.check_in
    new_out = parse_date(changes.get("checkOut")) or snapshot.check_out
    if new_in is None or new_out is None:
        result.violate("invalid_dates", "Requested dates could not be parsed")
        return
    if "checkIn" in changes and new_in < now.date():
        result.violate("check_in_in_past", "New check-in date is in the past", checkIn=new_in.isoformat())
        return
    if new_out <= new_in:
        result.violate("invalid_date_range", "Check-out must be after check-in",
                       checkIn=new_in.isoformat(), checkOut=new_out.isoformat())
        return

    shifts = []
    if snapshot.check_in:
        shifts.append(abs((new_in - snapshot.check_in).days))
    if snapshot.check_out:
        shifts.append(abs((new_out - snapshot.check_out).days))
    result.date_shift_days = max(shifts) if shifts else None

    if result.date_shift_days is not None and result.date_shift_days > policy.max_date_shift_days:
        result.review("date_shift_exceeds_policy")
    if status == "checked_in":
        result.review("guest_checked_in")
    elif hours_to_arrival is not None and hours_to_arrival < policy.date_change_review_hours:
        result.review("date_change_near_arrival")

    existing = set(nights(snapshot.check_in, snapshot.check_out)) if snapshot.check_in and snapshot.check_out else set()
    added = set(nights(new_in, new_out)) - existing
    if added & stop_sell_nights:
        result.review("stop_sell_conflict")


def _evaluate_rate(result: RuleEvaluation, changes, snapshot, policy: AmendmentPolicy):
    new_amount = _float(changes.get("totalAmount"))
    if new_amount is None or new_amount <= 0:
        result.violate("invalid_rate", "Requested amount must be positive", amount=changes.get("totalAmount"))
        return
    current = _float(snapshot.total_amount)
    if not current:
        result.review("rate_baseline_unknown")
        return
    delta = (new_amount - current) / current * 100
    result.rate_delta_percent = round(delta, 2)
    if abs(delta) > policy.review_rate_delta_percent:
        result.review("rate_delta_requires_review")
    elif abs(delta) > policy.max_rate_delta_percent:
        result.review("rate_delta_exceeds_policy")


def _evaluate_room(result: RuleEvaluation, changes, snapshot, stop_sell_nights: Set[date]):
    if not str(changes.get("roomType") or "").strip():
        result.violate("invalid_room_type", "Requested room type is empty")
        return
    result.review("room_change_requires_review")
    if snapshot.check_in and snapshot.check_out and set(nights(snapshot.check_in, snapshot.check_out)) & stop_sell_nights:
        result.review("stop_sell_conflict")


def amendment_priority(amendment_type: str, snapshot, now: datetime) -> str:
    if amendment_type == AmendmentType.CANCELLATION_REQUEST.value:
        return "critical"
    if snapshot is not None and snapshot.check_in:
        days_out = (snapshot.check_in - now.date()).days
        if days_out <= 2:
            return "high"
        if days_out > 30:
            return "low"
    return "medium"


# Manual booking status graph
BOOKING_STATUS_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"checked_in", "cancelled", "no_show", "modified"},
    "modified": {"checked_in", "cancelled", "modified"},
    "checked_in": {"checked_out"},
}


def can_change_status(current: Optional[str], target: str) -> bool:
    return target in BOOKING_STATUS_TRANSITIONS.get((current or "").lower(), set())
