# backend/bookingcore/services/group_booking_coordinator.py
"""
Group booking coordinator.

Group bookings collect one vote per participant: coaches accept (optionally
with a rate and note), clients confirm. Each vote is merged as its own row
through ``BookingRepository.merge_vote`` while the caller holds the booking
row lock, and the aggregate status is recomputed from all votes afterwards:

- some coaches accepted -> PARTIALLY_ACCEPTED, all -> PENDING_ACCEPTANCE
- some clients confirmed -> PARTIALLY_CONFIRMED, all -> CONFIRMED
- any client declines -> DECLINED_BY_CLIENT for the whole booking

Whole-booking operations (cancel, payment, reject, withdraw, reschedule,
expire) follow the single-party rules with the group statuses admitted.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from ..core.enums import ParticipantRole
from ..core.exceptions import InvalidTransitionException, ValidationException
from ..models.booking import Booking, BookingStatus, GroupBooking, ParticipantVote
from ..repositories.booking_repository import BookingRepository
from .booking_lifecycle import BookingLifecycle, TransitionPlan, current_status, set_once, transition_time
from .booking_notifications import BookingEvent
from .rate_calculator import to_decimal


class GroupBookingCoordinator(BookingLifecycle):
    """Vote merging and aggregate status for group bookings."""

    ACCEPTABLE = frozenset({BookingStatus.REQUESTED, BookingStatus.PARTIALLY_ACCEPTED})
    CONFIRMABLE = frozenset(
        {BookingStatus.PENDING_ACCEPTANCE, BookingStatus.PARTIALLY_CONFIRMED}
    )
    REJECTABLE = frozenset({BookingStatus.REQUESTED, BookingStatus.PARTIALLY_ACCEPTED})
    WITHDRAWABLE = frozenset({BookingStatus.REQUESTED, BookingStatus.PARTIALLY_ACCEPTED})
    RESCHEDULABLE = frozenset(
        {
            BookingStatus.REQUESTED,
            BookingStatus.PARTIALLY_ACCEPTED,
            BookingStatus.PENDING_ACCEPTANCE,
            BookingStatus.PARTIALLY_CONFIRMED,
            BookingStatus.CONFIRMED,
        }
    )
    EXPIRABLE = frozenset(
        {
            BookingStatus.REQUESTED,
            BookingStatus.PARTIALLY_ACCEPTED,
            BookingStatus.PENDING_ACCEPTANCE,
            BookingStatus.PARTIALLY_CONFIRMED,
        }
    )

    def __init__(self, repository: BookingRepository):
        self.repository = repository

    def _vote(self, booking: GroupBooking, participant_id: str, role: ParticipantRole) -> ParticipantVote:
        vote = booking.vote_of(participant_id, role)
        if vote is None:
            raise ValidationException(
                f"{participant_id} is not a {role.value} of this booking",
                code="NOT_A_PARTICIPANT",
                details={"booking_id": booking.id, "participant_id": participant_id},
            )
        return vote

    @staticmethod
    def _group(booking: Booking) -> GroupBooking:
        if not isinstance(booking, GroupBooking):
            raise TypeError(f"Booking {booking.id} is not a group booking")
        return booking

    def accept_as_coach(
        self,
        booking: Booking,
        coach_id: str,
        now: datetime,
        rate: Optional[Decimal] = None,
        note: Optional[str] = None,
    ) -> TransitionPlan:
        group = self._group(booking)
        rate = to_decimal(rate)
        if rate is not None and rate < 0:
            raise InvalidTransitionException(
                "accept", booking.status, "Rate must be non-negative", details={"rate": str(rate)}
            )

        vote = self._vote(group, coach_id, ParticipantRole.COACH)
        if vote.accepted:
            same_rate = rate is None or rate == to_decimal(vote.rate)
            same_note = note is None or note == vote.note
            if same_rate and same_note:
                return TransitionPlan.noop("accept")
        self._require(booking, "accept", self.ACCEPTABLE)

        at = transition_time(booking, now)
        self.repository.merge_vote(
            group, coach_id, ParticipantRole.COACH, accepted=True, voted_at=at, rate=rate, note=note
        )

        all_accepted = all(v.accepted for v in group.votes_for(ParticipantRole.COACH))
        changes: Dict[str, Any] = {"updated_at": at}
        if all_accepted:
            changes["status"] = BookingStatus.PENDING_ACCEPTANCE.value
            set_once(changes, booking, "pending_at", at)
        else:
            changes["status"] = BookingStatus.PARTIALLY_ACCEPTED.value
        if len(group.coach_ids) == 1:
            if rate is not None:
                changes["rate_usd"] = rate
            if note is not None:
                changes["coach_note"] = note

        event = BookingEvent.ACCEPTED if all_accepted else BookingEvent.PARTIALLY_ACCEPTED
        return TransitionPlan("accept", changes, event)

    def confirm_as_client(self, booking: Booking, client_id: str, now: datetime) -> TransitionPlan:
        group = self._group(booking)
        vote = self._vote(group, client_id, ParticipantRole.CLIENT)
        if vote.accepted:
            return TransitionPlan.noop("confirm")
        self._require(booking, "confirm", self.CONFIRMABLE)

        at = transition_time(booking, now)
        self.repository.merge_vote(
            group, client_id, ParticipantRole.CLIENT, accepted=True, voted_at=at
        )

        all_confirmed = all(v.accepted for v in group.votes_for(ParticipantRole.CLIENT))
        changes: Dict[str, Any] = {"updated_at": at}
        if all_confirmed:
            changes["status"] = BookingStatus.CONFIRMED.value
            changes["confirmed_by_id"] = client_id
            set_once(changes, booking, "confirmed_at", at)
        else:
            changes["status"] = BookingStatus.PARTIALLY_CONFIRMED.value

        event = BookingEvent.CONFIRMED if all_confirmed else BookingEvent.PARTIALLY_CONFIRMED
        return TransitionPlan("confirm", changes, event)

    def decline_as_client(
        self, booking: Booking, client_id: str, reason: str, now: datetime
    ) -> TransitionPlan:
        group = self._group(booking)
        self._vote(group, client_id, ParticipantRole.CLIENT)
        plan = super().decline_as_client(booking, client_id, reason, now)
        if not plan.is_noop:
            self.repository.merge_vote(
                group,
                client_id,
                ParticipantRole.CLIENT,
                accepted=False,
                voted_at=plan.changes["updated_at"],
            )
        return plan

    def reschedule(
        self,
        booking: Booking,
        client_id: str,
        start_at: datetime,
        end_at: datetime,
        now: datetime,
    ) -> TransitionPlan:
        plan = super().reschedule(booking, client_id, start_at, end_at, now)
        if plan.reset_votes:
            self.repository.reset_votes(self._group(booking))
        return plan

    def progress(self, booking: Booking) -> Dict[str, Any]:
        """Vote counts per side, for logging and status displays."""
        group = self._group(booking)
        coaches = group.votes_for(ParticipantRole.COACH)
        clients = group.votes_for(ParticipantRole.CLIENT)
        return {
            "status": current_status(booking).value,
            "coaches_accepted": sum(1 for v in coaches if v.accepted),
            "coaches_total": len(coaches),
            "clients_confirmed": sum(1 for v in clients if v.accepted),
            "clients_total": len(clients),
        }
