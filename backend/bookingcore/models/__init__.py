"""ORM models for the booking core; importing this module registers every table."""

from .booking import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingKind,
    BookingMirror,
    BookingStatus,
    GroupBooking,
    ParticipantVote,
    PaymentStatus,
    SimpleBooking,
)
from .event_outbox import EventOutbox, EventOutboxStatus
from .notification import Notification

__all__ = [
    "ACTIVE_BOOKING_STATUSES",
    "Booking",
    "BookingKind",
    "BookingMirror",
    "BookingStatus",
    "EventOutbox",
    "EventOutboxStatus",
    "GroupBooking",
    "Notification",
    "ParticipantVote",
    "PaymentStatus",
    "SimpleBooking",
]
