# backend/bookingcore/schemas/booking.py
"""
Pydantic schemas for booking requests and the booking read model.

The read model is a tagged union on ``kind``: ``SimpleBookingRecord`` for
one coach and one client, ``GroupBookingRecord`` otherwise. Records are
built from either the primary row or a participant mirror and must compare
equal for the same booking.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, computed_field, field_validator, model_validator

from ..core.clock import ensure_utc, optional_utc
from ..models.booking import (
    Booking,
    BookingKind,
    BookingMirror,
    BookingStatus,
    GroupBooking,
    PaymentStatus,
)
from ..services import rate_calculator
from .base import Money, StandardizedModel, StrictRequestModel


def _clean_ids(value: Any) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    if not isinstance(value, (list, tuple)):
        raise ValueError("must be a list of participant ids")
    cleaned: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError("participant ids must be strings")
        item = item.strip()
        if item and item not in cleaned:
            cleaned.append(item)
    if not cleaned:
        raise ValueError("at least one participant id is required")
    return cleaned


class BookingWindow(StrictRequestModel):
    start_at: datetime
    end_at: datetime

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_tz(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _check_order(self) -> "BookingWindow":
        if self.start_at >= self.end_at:
            raise ValueError("start_at must be before end_at")
        return self


class BookingCreate(BookingWindow):
    """Request body for a new booking. The creator is always a client."""

    client_ids: List[str] = Field(..., min_length=1)
    coach_ids: List[str] = Field(..., min_length=1)
    location: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("client_ids", "coach_ids", mode="before")
    @classmethod
    def _normalize_ids(cls, v: Any) -> List[str]:
        return _clean_ids(v)

    @model_validator(mode="after")
    def _check_participants(self) -> "BookingCreate":
        overlap = set(self.client_ids) & set(self.coach_ids)
        if overlap:
            raise ValueError(
                f"participant cannot be both coach and client: {', '.join(sorted(overlap))}"
            )
        return self

    @property
    def kind(self) -> BookingKind:
        if len(self.coach_ids) > 1 or len(self.client_ids) > 1:
            return BookingKind.GROUP
        return BookingKind.SIMPLE


# Largest value the Numeric(10, 2) rate columns hold
MAX_RATE_USD = Decimal("99999999.99")


class BookingAccept(StrictRequestModel):
    rate_usd: Optional[Money] = Field(None, description="Hourly rate offered by the coach")
    note: Optional[str] = Field(None, max_length=2000)

    @field_validator("rate_usd")
    @classmethod
    def _valid_rate(cls, v: Optional[Money]) -> Optional[Money]:
        if v is None:
            return v
        if v < 0:
            raise ValueError("rate_usd must be non-negative")
        if v > MAX_RATE_USD:
            raise ValueError(f"rate_usd must not exceed {MAX_RATE_USD}")
        return v


class BookingDecline(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def _strip_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class BookingReject(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingCancel(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingReschedule(BookingWindow):
    pass


class _BookingRecordBase(StandardizedModel):
    id: str
    client_ids: List[str]
    coach_ids: List[str]
    start_at: datetime
    end_at: datetime
    location: Optional[str] = None
    notes: Optional[str] = None
    coach_note: Optional[str] = None
    status: BookingStatus
    rate_usd: Optional[Money] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    revision: int = 0
    rejection_reason: Optional[str] = None
    client_decline_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    confirmed_by_id: Optional[str] = None
    declined_by_id: Optional[str] = None
    cancelled_by_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    pending_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rescheduled_at: Optional[datetime] = None

    @computed_field  # type: ignore[misc]
    @property
    def is_group_booking(self) -> bool:
        return len(self.coach_ids) > 1 or len(self.client_ids) > 1

    @computed_field  # type: ignore[misc]
    @property
    def duration_hours(self) -> Optional[Money]:
        hours = rate_calculator.duration_hours(self.start_at, self.end_at)
        return hours if hours > 0 else None

    def cost_estimate(self) -> rate_calculator.CostEstimate:
        return rate_calculator.estimate_booking_cost(
            self.start_at,
            self.end_at,
            self.coach_ids,
            rate_usd=self.rate_usd,
            coach_rates=getattr(self, "coach_rates", None),
        )

    @computed_field  # type: ignore[misc]
    @property
    def estimated_cost(self) -> Optional[Money]:
        """None while the cost is unknown (no rate yet)."""
        return self.cost_estimate().total


class SimpleBookingRecord(_BookingRecordBase):
    """One coach, one client."""

    kind: Literal["simple"] = "simple"


class GroupBookingRecord(_BookingRecordBase):
    """Several coaches and/or several clients, with per-participant votes."""

    kind: Literal["group"] = "group"
    coach_rates: Dict[str, Money] = Field(default_factory=dict)
    coach_acceptances: Dict[str, bool] = Field(default_factory=dict)
    client_confirmations: Dict[str, bool] = Field(default_factory=dict)


BookingRecord = Annotated[
    Union[SimpleBookingRecord, GroupBookingRecord], Field(discriminator="kind")
]

_DATETIME_FIELDS = (
    "created_at",
    "updated_at",
    "pending_at",
    "confirmed_at",
    "declined_at",
    "cancelled_at",
    "rescheduled_at",
)

_PLAIN_FIELDS = (
    "location",
    "notes",
    "coach_note",
    "rate_usd",
    "rejection_reason",
    "client_decline_reason",
    "cancellation_reason",
    "confirmed_by_id",
    "declined_by_id",
    "cancelled_by_id",
)


def _common_fields(source: Union[Booking, BookingMirror], booking_id: str) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": booking_id,
        "client_ids": list(source.client_ids or []),
        "coach_ids": list(source.coach_ids or []),
        "start_at": ensure_utc(source.start_at),
        "end_at": ensure_utc(source.end_at),
        "status": source.status,
        "payment_status": source.payment_status,
        "revision": source.revision or 0,
    }
    for name in _PLAIN_FIELDS:
        data[name] = getattr(source, name)
    for name in _DATETIME_FIELDS:
        data[name] = optional_utc(getattr(source, name))
    return data


def booking_record_from_orm(booking: Booking) -> Union[SimpleBookingRecord, GroupBookingRecord]:
    """Read model from the primary row."""
    data = _common_fields(booking, booking.id)
    if isinstance(booking, GroupBooking):
        return GroupBookingRecord(**data, **booking.vote_snapshot())
    return SimpleBookingRecord(**data)


def booking_record_from_mirror(
    mirror: BookingMirror,
) -> Union[SimpleBookingRecord, GroupBookingRecord]:
    """Read model from one participant's mirror."""
    data = _common_fields(mirror, mirror.booking_id)
    if mirror.kind == BookingKind.GROUP.value:
        return GroupBookingRecord(
            **data,
            coach_rates=dict(mirror.coach_rates or {}),
            coach_acceptances=dict(mirror.coach_acceptances or {}),
            client_confirmations=dict(mirror.client_confirmations or {}),
        )
    return SimpleBookingRecord(**data)


class CostEstimateResponse(StandardizedModel):
    booking_id: str
    is_group: bool
    duration_hours: Optional[Money] = None
    total: Optional[Money] = None

    @computed_field  # type: ignore[misc]
    @property
    def is_known(self) -> bool:
        return self.total is not None


class BookingListResponse(StandardizedModel):
    items: List[BookingRecord]
    total: int

