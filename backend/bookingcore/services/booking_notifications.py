# backend/bookingcore/services/booking_notifications.py
"""
Booking notification templates and recipient rules.

A committed transition produces one ``OutboundNotification`` per recipient;
``BookingService`` stores them in the event outbox inside the transition's
transaction and ``NotificationDispatcher`` delivers them later.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.enums import ParticipantRole
from ..models.booking import Booking
from ..principal import AuthContext


class BookingEvent(str, Enum):
    REQUESTED = "booking.requested"
    PARTIALLY_ACCEPTED = "booking.partially_accepted"
    ACCEPTED = "booking.accepted"
    PARTIALLY_CONFIRMED = "booking.partially_confirmed"
    CONFIRMED = "booking.confirmed"
    DECLINED = "booking.declined"
    REJECTED = "booking.rejected"
    CANCELLED = "booking.cancelled"
    WITHDRAWN = "booking.withdrawn"
    RESCHEDULED = "booking.rescheduled"
    PAYMENT_RECEIVED = "booking.payment_received"
    EXPIRED = "booking.expired"


@dataclass(frozen=True)
class NotificationTemplate:
    event: BookingEvent
    title: str
    body_template: str


TEMPLATES: Dict[BookingEvent, NotificationTemplate] = {
    t.event: t
    for t in (
        NotificationTemplate(
            BookingEvent.REQUESTED,
            "Booking Requested",
            "{actor_name} requested a session on {date} at {time}.",
        ),
        NotificationTemplate(
            BookingEvent.PARTIALLY_ACCEPTED,
            "Booking Partially Accepted",
            "{actor_name} accepted your session on {date} at {time}. Waiting on the other coaches.",
        ),
        NotificationTemplate(
            BookingEvent.ACCEPTED,
            "Action Required: Confirm Booking",
            "{actor_name} accepted your session on {date} at {time}. Please confirm it.",
        ),
        NotificationTemplate(
            BookingEvent.PARTIALLY_CONFIRMED,
            "Booking Partially Confirmed",
            "{actor_name} confirmed the session on {date} at {time}. Waiting on the other clients.",
        ),
        NotificationTemplate(
            BookingEvent.CONFIRMED,
            "Booking Confirmed",
            "{actor_name} confirmed the session on {date} at {time}.",
        ),
        NotificationTemplate(
            BookingEvent.DECLINED,
            "Booking Declined",
            "{actor_name} declined the session on {date} at {time}.{reason_suffix}",
        ),
        NotificationTemplate(
            BookingEvent.REJECTED,
            "Booking Rejected",
            "{actor_name} cannot take the session on {date} at {time}.{reason_suffix}",
        ),
        NotificationTemplate(
            BookingEvent.CANCELLED,
            "Booking Cancelled",
            "{actor_name} cancelled the session on {date} at {time}.{reason_suffix}",
        ),
        NotificationTemplate(
            BookingEvent.WITHDRAWN,
            "Booking Request Withdrawn",
            "{actor_name} withdrew the request for {date} at {time}.",
        ),
        NotificationTemplate(
            BookingEvent.RESCHEDULED,
            "Booking Reschedule Requested",
            "{actor_name} asked to move the session to {date} at {time}.",
        ),
        NotificationTemplate(
            BookingEvent.PAYMENT_RECEIVED,
            "Payment Notification",
            "Payment for the session on {date} at {time} has been received.",
        ),
        NotificationTemplate(
            BookingEvent.EXPIRED,
            "Booking Expired",
            "The request for {date} at {time} expired before everyone responded.",
        ),
    )
}

# Group transitions that end or restart the negotiation for everyone
WHOLE_BOOKING_EVENTS = frozenset(
    {
        BookingEvent.DECLINED,
        BookingEvent.REJECTED,
        BookingEvent.CANCELLED,
        BookingEvent.WITHDRAWN,
        BookingEvent.RESCHEDULED,
    }
)


@dataclass(frozen=True)
class OutboundNotification:
    recipient_id: str
    title: str
    body: str
    event_type: str
    booking_id: str
    sender_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


def _actor_name(actor: Optional[AuthContext]) -> str:
    if actor is None:
        return "System"
    if actor.display_name:
        return actor.display_name
    return "Your coach" if actor.role is ParticipantRole.COACH else "A client"


def recipients_for(
    event: BookingEvent,
    booking: Booking,
    actor: Optional[AuthContext] = None,
) -> List[str]:
    """
    The other side of the actor, plus the actor's co-participants when a
    whole group booking ends or restarts. Without an actor everyone is told.
    """
    if actor is None:
        return booking.participant_ids()

    recipients = booking.participant_ids(actor.role.other)
    if event in WHOLE_BOOKING_EVENTS and booking.is_group_booking:
        recipients += booking.participant_ids(actor.role)

    ordered: List[str] = []
    for participant_id in recipients:
        if participant_id != actor.user_id and participant_id not in ordered:
            ordered.append(participant_id)
    return ordered


def render_notification(
    event: BookingEvent,
    booking: Booking,
    actor: Optional[AuthContext] = None,
    reason: Optional[str] = None,
) -> tuple[str, str]:
    template = TEMPLATES[event]
    start = booking.start_at
    body = template.body_template.format(
        actor_name=_actor_name(actor),
        date=start.strftime("%b %d, %Y"),
        time=start.strftime("%H:%M UTC"),
        reason_suffix=f" Reason: {reason}" if reason else "",
    )
    return template.title, body


def build_booking_notifications(
    event: BookingEvent,
    booking: Booking,
    actor: Optional[AuthContext] = None,
    reason: Optional[str] = None,
) -> List[OutboundNotification]:
    title, body = render_notification(event, booking, actor, reason)
    return [
        OutboundNotification(
            recipient_id=recipient_id,
            title=title,
            body=body,
            event_type=event.value,
            booking_id=booking.id,
            sender_id=actor.user_id if actor else None,
        )
        for recipient_id in recipients_for(event, booking, actor)
    ]
