"""
Event payload schemas

Every bus event kind has a schema; `validate_event_payload` is the single
entry point used by the bus before anything is persisted. Adapters read the
validated model, never the raw dict.
"""

import datetime as dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from ..errors import ValidationError
from ..models.bus import EventKind
from ..models.payload import BusinessOperation, Priority


class _EventPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    hotel_id: str = Field(alias="hotelId")
    channel: Optional[str] = None
    notify_channels: bool = Field(default=True, alias="notifyChannels")


class BookingEventPayload(_EventPayload):
    booking_id: str = Field(alias="bookingId")
    channel_reservation_id: Optional[str] = Field(default=None, alias="channelReservationId")
    room_type: Optional[str] = Field(default=None, alias="roomType")
    check_in: Optional[dt.date] = Field(default=None, alias="checkIn")
    check_out: Optional[dt.date] = Field(default=None, alias="checkOut")
    guest_name: Optional[str] = Field(default=None, alias="guestName")
    total_amount: Optional[float] = Field(default=None, alias="totalAmount")
    currency: Optional[str] = None
    status: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.check_in and self.check_out and self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class _DatedPayload(_EventPayload):
    room_type: str = Field(alias="roomType")
    date: Optional[dt.date] = None
    start_date: Optional[dt.date] = Field(default=None, alias="startDate")
    end_date: Optional[dt.date] = Field(default=None, alias="endDate")

    @model_validator(mode="after")
    def _date_or_range(self):
        if self.date is None and (self.start_date is None or self.end_date is None):
            raise ValueError("either date or start_date + end_date is required")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def date_from(self) -> dt.date:
        return self.date or self.start_date

    @property
    def date_to(self) -> dt.date:
        return self.date or self.end_date


class AvailabilityPayload(_DatedPayload):
    available: int = Field(ge=0)


class RateUpdatePayload(_DatedPayload):
    rate: float = Field(gt=0)
    currency: str = "USD"
    rate_plan: Optional[str] = Field(default=None, alias="ratePlan")


class StopSellPayload(_EventPayload):
    room_type: str = Field(alias="roomType")
    dates: List[dt.date] = Field(min_length=1)
    stop_sell: bool = Field(alias="stopSell")


class RoomTypePayload(_EventPayload):
    room_type: str = Field(alias="roomType")
    name: Optional[str] = None
    max_occupancy: Optional[int] = Field(default=None, alias="maxOccupancy", ge=1)


class AmendmentReceivedPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    payload_id: str
    channel: str
    channel_amendment_id: str
    amendment_type: str
    hotel_id: Optional[str] = None
    booking_id: Optional[str] = None
    channel_reservation_id: Optional[str] = None
    requested_changes: Dict[str, Any] = Field(default_factory=dict)
    requires_manual_approval: bool = False
    guest_id: Optional[str] = None
    notify_channels: bool = True


class AmendmentDecidedPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    amendment_id: str
    channel: str
    channel_amendment_id: str
    state: str
    booking_id: Optional[str] = None
    hotel_id: Optional[str] = None
    channel_reservation_id: Optional[str] = None
    reason: Optional[Dict[str, Any]] = None
    notify_channels: bool = True


EVENT_SCHEMAS = {
    EventKind.BOOKING_CREATED.value: BookingEventPayload,
    EventKind.BOOKING_MODIFIED.value: BookingEventPayload,
    EventKind.BOOKING_CANCELLED.value: BookingEventPayload,
    EventKind.INVENTORY_AVAILABILITY.value: AvailabilityPayload,
    EventKind.RATE_UPDATE.value: RateUpdatePayload,
    EventKind.STOP_SELL_CHANGED.value: StopSellPayload,
    EventKind.ROOM_TYPE_UPDATED.value: RoomTypePayload,
    EventKind.AMENDMENT_RECEIVED.value: AmendmentReceivedPayload,
    EventKind.AMENDMENT_DECIDED.value: AmendmentDecidedPayload,
}

KIND_TO_OPERATION = {
    EventKind.BOOKING_CREATED.value: BusinessOperation.BOOKING_CREATE.value,
    EventKind.BOOKING_MODIFIED.value: BusinessOperation.BOOKING_UPDATE.value,
    EventKind.BOOKING_CANCELLED.value: BusinessOperation.BOOKING_CANCEL.value,
    EventKind.INVENTORY_AVAILABILITY.value: BusinessOperation.AVAILABILITY_UPDATE.value,
    EventKind.RATE_UPDATE.value: BusinessOperation.RATE_UPDATE.value,
    EventKind.STOP_SELL_CHANGED.value: BusinessOperation.STOP_SELL_UPDATE.value,
    EventKind.ROOM_TYPE_UPDATED.value: BusinessOperation.ROOM_TYPE_UPDATE.value,
    EventKind.AMENDMENT_RECEIVED.value: BusinessOperation.AMENDMENT_REQUEST.value,
    EventKind.AMENDMENT_DECIDED.value: BusinessOperation.AMENDMENT_DECISION.value,
}

# 1 = most urgent
KIND_PRIORITY = {
    EventKind.BOOKING_CANCELLED.value: 1,
    EventKind.BOOKING_MODIFIED.value: 1,
    EventKind.AMENDMENT_DECIDED.value: 1,
    EventKind.INVENTORY_AVAILABILITY.value: 2,
    EventKind.STOP_SELL_CHANGED.value: 2,
    EventKind.AMENDMENT_RECEIVED.value: 2,
    EventKind.RATE_UPDATE.value: 3,
    EventKind.BOOKING_CREATED.value: 3,
    EventKind.ROOM_TYPE_UPDATED.value: 4,
}

_PRIORITY_LABELS = {
    1: Priority.CRITICAL.value,
    2: Priority.HIGH.value,
    3: Priority.MEDIUM.value,
    4: Priority.LOW.value,
}


def priority_for_kind(kind: str) -> str:
    return _PRIORITY_LABELS[KIND_PRIORITY.get(kind, 3)]


def validate_event_payload(kind: str, payload: Dict[str, Any]) -> BaseModel:
    """Parse an event payload against its kind's schema"""
    schema = EVENT_SCHEMAS.get(kind)
    if schema is None:
        raise ValidationError(f"Unknown event kind: {kind}", code="unknown_event_kind")
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError(
            f"Invalid payload for {kind}: {', '.join(fields) or 'schema mismatch'}",
            details={"fields": fields},
        )
