# backend/bookingcore/services/booking_lifecycle.py
"""
Booking lifecycle state machine for one coach and one client.

Each operation checks its precondition against the current row and returns
a ``TransitionPlan``: the replicated field changes plus the notification
event. Nothing is written here; ``BookingService`` applies the plan through
``BookingRepository.transition`` inside one transaction.

Re-applying an operation whose outcome already holds returns an empty plan,
so a retried call neither writes nor notifies twice.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from ..core.clock import ensure_utc
from ..core.enums import ParticipantRole
from ..core.exceptions import InvalidTransitionException
from ..models.booking import Booking, BookingStatus, PaymentStatus
from .booking_notifications import BookingEvent
from .rate_calculator import to_decimal

TIMESTAMP_FIELDS = (
    "created_at",
    "updated_at",
    "pending_at",
    "confirmed_at",
    "declined_at",
    "cancelled_at",
    "rescheduled_at",
)

EXPIRED_REASON = "expired"
WITHDRAWN_REASON = "withdrawn"


@dataclass(frozen=True)
class TransitionPlan:
    """Outcome of a lifecycle operation, applied by the service."""

    operation: str
    changes: Dict[str, Any] = field(default_factory=dict)
    event: Optional[BookingEvent] = None
    reason: Optional[str] = None
    reset_votes: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.changes

    @classmethod
    def noop(cls, operation: str) -> "TransitionPlan":
        return cls(operation=operation)


def current_status(booking: Booking) -> BookingStatus:
    return BookingStatus(booking.status)


def is_paid(booking: Booking) -> bool:
    return booking.payment_status == PaymentStatus.PAID.value


def transition_time(booking: Booking, now: datetime) -> datetime:
    """``now``, clamped so it never precedes a timestamp already on the booking."""
    stamps = [ensure_utc(getattr(booking, name)) for name in TIMESTAMP_FIELDS if getattr(booking, name)]
    now = ensure_utc(now)
    return max([now] + stamps)


def set_once(changes: Dict[str, Any], booking: Booking, name: str, value: Any) -> None:
    if getattr(booking, name) is None:
        changes[name] = value


class BookingLifecycle:
    """Transition rules for simple (one coach, one client) bookings."""

    ACCEPTABLE: FrozenSet[BookingStatus] = frozenset({BookingStatus.REQUESTED})
    CONFIRMABLE: FrozenSet[BookingStatus] = frozenset({BookingStatus.PENDING_ACCEPTANCE})
    REJECTABLE: FrozenSet[BookingStatus] = frozenset({BookingStatus.REQUESTED})
    WITHDRAWABLE: FrozenSet[BookingStatus] = frozenset({BookingStatus.REQUESTED})
    CANCELLABLE: FrozenSet[BookingStatus] = frozenset({BookingStatus.CONFIRMED})
    RESCHEDULABLE: FrozenSet[BookingStatus] = frozenset(
        {BookingStatus.REQUESTED, BookingStatus.PENDING_ACCEPTANCE, BookingStatus.CONFIRMED}
    )
    EXPIRABLE: FrozenSet[BookingStatus] = frozenset(
        {
            BookingStatus.REQUESTED,
            BookingStatus.PARTIALLY_ACCEPTED,
            BookingStatus.PENDING_ACCEPTANCE,
        }
    )

    def _require(self, booking: Booking, operation: str, allowed: FrozenSet[BookingStatus]) -> None:
        status = current_status(booking)
        if status not in allowed:
            raise InvalidTransitionException(
                operation,
                status.value,
                details={"allowed": sorted(s.value for s in allowed)},
            )

    # ------------------------------------------------------------ coach side

    def accept_as_coach(
        self,
        booking: Booking,
        coach_id: str,
        now: datetime,
        rate: Optional[Decimal] = None,
        note: Optional[str] = None,
    ) -> TransitionPlan:
        rate = to_decimal(rate)
        if rate is not None and rate < 0:
            raise InvalidTransitionException(
                "accept", booking.status, "Rate must be non-negative", details={"rate": str(rate)}
            )
        if current_status(booking) is BookingStatus.PENDING_ACCEPTANCE:
            same_rate = rate is None or rate == to_decimal(booking.rate_usd)
            same_note = note is None or note == booking.coach_note
            if same_rate and same_note:
                return TransitionPlan.noop("accept")
        self._require(booking, "accept", self.ACCEPTABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": BookingStatus.PENDING_ACCEPTANCE.value,
            "updated_at": at,
        }
        set_once(changes, booking, "pending_at", at)
        if rate is not None:
            changes["rate_usd"] = rate
        if note is not None:
            changes["coach_note"] = note
        return TransitionPlan("accept", changes, BookingEvent.ACCEPTED)

    def reject_as_coach(
        self,
        booking: Booking,
        coach_id: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> TransitionPlan:
        if current_status(booking) is BookingStatus.REJECTED:
            return TransitionPlan.noop("reject")
        self._require(booking, "reject", self.REJECTABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": BookingStatus.REJECTED.value,
            "rejection_reason": reason,
            "declined_by_id": coach_id,
            "updated_at": at,
        }
        set_once(changes, booking, "declined_at", at)
        return TransitionPlan("reject", changes, BookingEvent.REJECTED, reason=reason)

    # ----------------------------------------------------------- client side

    def confirm_as_client(self, booking: Booking, client_id: str, now: datetime) -> TransitionPlan:
        if current_status(booking) is BookingStatus.CONFIRMED:
            return TransitionPlan.noop("confirm")
        self._require(booking, "confirm", self.CONFIRMABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": BookingStatus.CONFIRMED.value,
            "confirmed_by_id": client_id,
            "updated_at": at,
        }
        set_once(changes, booking, "confirmed_at", at)
        return TransitionPlan("confirm", changes, BookingEvent.CONFIRMED)

    def decline_as_client(
        self, booking: Booking, client_id: str, reason: str, now: datetime
    ) -> TransitionPlan:
        # First decline wins; later declines leave the recorded reason alone
        if current_status(booking) is BookingStatus.DECLINED_BY_CLIENT:
            return TransitionPlan.noop("decline")
        self._require(booking, "decline", self.CONFIRMABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": BookingStatus.DECLINED_BY_CLIENT.value,
            "client_decline_reason": reason,
            "declined_by_id": client_id,
            "updated_at": at,
        }
        set_once(changes, booking, "declined_at", at)
        return TransitionPlan("decline", changes, BookingEvent.DECLINED, reason=reason)

    def withdraw(self, booking: Booking, client_id: str, now: datetime) -> TransitionPlan:
        if (
            current_status(booking) is BookingStatus.CANCELLED
            and booking.cancellation_reason == WITHDRAWN_REASON
        ):
            return TransitionPlan.noop("withdraw")
        self._require(booking, "withdraw", self.WITHDRAWABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": BookingStatus.CANCELLED.value,
            "cancellation_reason": WITHDRAWN_REASON,
            "cancelled_by_id": client_id,
            "updated_at": at,
        }
        set_once(changes, booking, "cancelled_at", at)
        return TransitionPlan("withdraw", changes, BookingEvent.WITHDRAWN)

    def reschedule(
        self,
        booking: Booking,
        client_id: str,
        start_at: datetime,
        end_at: datetime,
        now: datetime,
    ) -> TransitionPlan:
        start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
        if (
            current_status(booking) is BookingStatus.REQUESTED
            and ensure_utc(booking.start_at) == start_at
            and ensure_utc(booking.end_at) == end_at
        ):
            return TransitionPlan.noop("reschedule")
        if is_paid(booking):
            raise InvalidTransitionException(
                "reschedule", booking.status, "Paid bookings cannot be rescheduled"
            )
        self._require(booking, "reschedule", self.RESCHEDULABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "start_at": start_at,
            "end_at": end_at,
            "status": BookingStatus.REQUESTED.value,
            "confirmed_by_id": None,
            "rescheduled_at": at,
            "updated_at": at,
        }
        return TransitionPlan("reschedule", changes, BookingEvent.RESCHEDULED, reset_votes=True)

    # ------------------------------------------------------------- either side

    def cancel(
        self,
        booking: Booking,
        actor_id: str,
        role: ParticipantRole,
        now: datetime,
        reason: Optional[str] = None,
    ) -> TransitionPlan:
        target = (
            BookingStatus.CANCELLED_BY_COACH
            if role is ParticipantRole.COACH
            else BookingStatus.CANCELLED
        )
        if current_status(booking) is target:
            return TransitionPlan.noop("cancel")
        if is_paid(booking):
            raise InvalidTransitionException(
                "cancel", booking.status, "Paid bookings cannot be cancelled"
            )
        self._require(booking, "cancel", self.CANCELLABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": target.value,
            "cancelled_by_id": actor_id,
            "cancellation_reason": reason,
            "updated_at": at,
        }
        set_once(changes, booking, "cancelled_at", at)
        return TransitionPlan("cancel", changes, BookingEvent.CANCELLED, reason=reason)

    def acknowledge_payment(self, booking: Booking, now: datetime) -> TransitionPlan:
        if is_paid(booking):
            return TransitionPlan.noop("payment")
        self._require(booking, "acknowledge payment for", self.CANCELLABLE)

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "updated_at": at,
        }
        return TransitionPlan("payment", changes, BookingEvent.PAYMENT_RECEIVED)

    def expire(self, booking: Booking, now: datetime) -> TransitionPlan:
        """Auto-cancel a request nobody finished answering."""
        if current_status(booking) not in self.EXPIRABLE:
            return TransitionPlan.noop("expire")

        at = transition_time(booking, now)
        changes: Dict[str, Any] = {
            "status": BookingStatus.CANCELLED.value,
            "cancellation_reason": EXPIRED_REASON,
            "updated_at": at,
        }
        set_once(changes, booking, "cancelled_at", at)
        return TransitionPlan("expire", changes, BookingEvent.EXPIRED)

