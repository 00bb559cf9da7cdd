# backend/bookingcore/services/booking_service.py
"""
Booking Service for the booking negotiation core.

Public entry point for every booking operation. Each mutating call runs as
one unit of work:

1. validate input and resolve the caller (nothing written yet)
2. lock the primary booking row
3. let the lifecycle (simple) or the coordinator (group) plan the transition
4. apply the plan to the primary and every mirror
5. enqueue one outbox row per notification recipient
6. commit

A failure at any step rolls everything back; the booking stays as it was.
Notifications are delivered later by ``NotificationDispatcher``.
"""

from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..core.enums import ParticipantRole
from ..core.exceptions import (
    BookingConflictException,
    ForbiddenException,
    ValidationException,
)
from ..models.booking import Booking, GroupBooking
from ..principal import AuthContext
from ..repositories.booking_repository import BookingRepository
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..schemas.booking import (
    BookingAccept,
    BookingCreate,
    BookingDecline,
    BookingReschedule,
    GroupBookingRecord,
    SimpleBookingRecord,
    booking_record_from_mirror,
    booking_record_from_orm,
)
from .base import BaseService
from .booking_lifecycle import BookingLifecycle, TransitionPlan
from .booking_notifications import BookingEvent, build_booking_notifications
from .group_booking_coordinator import GroupBookingCoordinator
from .rate_calculator import CostEstimate, estimate_booking_cost

logger = logging.getLogger(__name__)

BookingRecordType = Union[SimpleBookingRecord, GroupBookingRecord]

_UNSET = object()


def _validation_error(message: str, exc: PydanticValidationError) -> ValidationException:
    errors = [
        {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return ValidationException(message, code="INVALID_BOOKING_REQUEST", details={"errors": errors})


class BookingService(BaseService):
    """
    Service layer for booking negotiation.

    Participant ids always come from the caller's ``AuthContext``: a coach
    accepts as themselves and a client confirms as themselves.
    """

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        repository: Optional[BookingRepository] = None,
        outbox_repository: Optional[EventOutboxRepository] = None,
        conflict_check_enabled: Optional[bool] = None,
        request_ttl_hours: object = _UNSET,
    ):
        super().__init__(db, clock)
        self.repository = repository or BookingRepository(db)
        self.outbox_repository = outbox_repository or EventOutboxRepository(db)
        self.lifecycle = BookingLifecycle()
        self.group_coordinator = GroupBookingCoordinator(self.repository)
        self.conflict_check_enabled = (
            settings.booking_conflict_check_enabled
            if conflict_check_enabled is None
            else conflict_check_enabled
        )
        self.request_ttl_hours: Optional[int] = (
            settings.booking_request_ttl_hours
            if request_ttl_hours is _UNSET
            else request_ttl_hours  # type: ignore[assignment]
        )

    # ------------------------------------------------------------------ create

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        auth: AuthContext,
        client_ids: List[str],
        coach_ids: List[str],
        start_at: datetime,
        end_at: datetime,
        location: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BookingRecordType:
        """
        Create a booking request on behalf of a listed client.

        Writes the primary row and one mirror per participant, then queues a
        "Booking Requested" notification for every coach.
        """
        user_id = auth.require_identity()
        try:
            data = BookingCreate(
                client_ids=client_ids,
                coach_ids=coach_ids,
                start_at=start_at,
                end_at=end_at,
                location=location,
                notes=notes,
            )
        except PydanticValidationError as exc:
            raise _validation_error("Invalid booking request", exc) from exc

        if auth.role is not ParticipantRole.CLIENT or user_id not in data.client_ids:
            raise ForbiddenException(
                "Only a listed client can request a booking",
                code="NOT_A_PARTICIPANT",
                details={"user_id": user_id},
            )
        self._check_conflicts(data.coach_ids, data.start_at, data.end_at)

        with self.transaction():
            booking = self.repository.create(
                client_ids=data.client_ids,
                coach_ids=data.coach_ids,
                start_at=data.start_at,
                end_at=data.end_at,
                location=data.location,
                notes=data.notes,
                created_at=self.clock.now(),
            )
            self._enqueue_notifications(booking, BookingEvent.REQUESTED, auth)
            record = booking_record_from_orm(booking)

        self.logger.info(
            "Booking %s requested by %s (%s, %d coaches, %d clients)",
            record.id,
            user_id,
            record.kind,
            len(record.coach_ids),
            len(record.client_ids),
        )
        return record

    # ------------------------------------------------------------ coach side

    @BaseService.measure_operation("accept_as_coach")
    def accept_as_coach(
        self,
        auth: AuthContext,
        booking_id: str,
        rate: Optional[Union[Decimal, float, str]] = None,
        note: Optional[str] = None,
    ) -> BookingRecordType:
        """Accept a request, optionally with an hourly rate and a note."""
        try:
            offer = BookingAccept(rate_usd=rate, note=note)
        except PydanticValidationError as exc:
            raise _validation_error("Invalid acceptance", exc) from exc

        with self.transaction():
            booking = self.repository.lock(booking_id)
            coach_id = self._require_participant(booking, auth, ParticipantRole.COACH)
            plan = self._rules_for(booking).accept_as_coach(
                booking, coach_id, self.clock.now(), rate=offer.rate_usd, note=offer.note
            )
            return self._apply(booking, plan, auth)

    @BaseService.measure_operation("reject_as_coach")
    def reject_as_coach(
        self, auth: AuthContext, booking_id: str, reason: Optional[str] = None
    ) -> BookingRecordType:
        """Turn down a request that is still waiting on the coach side."""
        with self.transaction():
            booking = self.repository.lock(booking_id)
            coach_id = self._require_participant(booking, auth, ParticipantRole.COACH)
            plan = self._rules_for(booking).reject_as_coach(
                booking, coach_id, self.clock.now(), reason=(reason or "").strip() or None
            )
            return self._apply(booking, plan, auth)

    # ----------------------------------------------------------- client side

    @BaseService.measure_operation("confirm_as_client")
    def confirm_as_client(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        with self.transaction():
            booking = self.repository.lock(booking_id)
            client_id = self._require_participant(booking, auth, ParticipantRole.CLIENT)
            plan = self._rules_for(booking).confirm_as_client(booking, client_id, self.clock.now())
            return self._apply(booking, plan, auth)

    @BaseService.measure_operation("decline_as_client")
    def decline_as_client(
        self, auth: AuthContext, booking_id: str, reason: str
    ) -> BookingRecordType:
        try:
            decline = BookingDecline(reason=reason or "")
        except PydanticValidationError as exc:
            raise _validation_error("A reason is required to decline", exc) from exc

        with self.transaction():
            booking = self.repository.lock(booking_id)
            client_id = self._require_participant(booking, auth, ParticipantRole.CLIENT)
            plan = self._rules_for(booking).decline_as_client(
                booking, client_id, decline.reason, self.clock.now()
            )
            return self._apply(booking, plan, auth)

    @BaseService.measure_operation("withdraw")
    def withdraw(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        """Pull back a request no coach has fully answered yet."""
        with self.transaction():
            booking = self.repository.lock(booking_id)
            client_id = self._require_participant(booking, auth, ParticipantRole.CLIENT)
            plan = self._rules_for(booking).withdraw(booking, client_id, self.clock.now())
            return self._apply(booking, plan, auth)

    @BaseService.measure_operation("reschedule")
    def reschedule(
        self,
        auth: AuthContext,
        booking_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> BookingRecordType:
        """Move an unpaid booking to a new window; negotiation starts over."""
        try:
            window = BookingReschedule(start_at=start_at, end_at=end_at)
        except PydanticValidationError as exc:
            raise _validation_error("Invalid booking window", exc) from exc

        with self.transaction():
            booking = self.repository.lock(booking_id)
            client_id = self._require_participant(booking, auth, ParticipantRole.CLIENT)
            self._check_conflicts(
                booking.coach_ids, window.start_at, window.end_at, exclude_booking_id=booking.id
            )
            plan = self._rules_for(booking).reschedule(
                booking, client_id, window.start_at, window.end_at, self.clock.now()
            )
            return self._apply(booking, plan, auth)

    # ------------------------------------------------------------- either side

    @BaseService.measure_operation("cancel_booking")
    def cancel(
        self, auth: AuthContext, booking_id: str, reason: Optional[str] = None
    ) -> BookingRecordType:
        """
        Cancel a confirmed, unpaid booking.

        A client cancellation ends in CANCELLED, a coach cancellation in
        CANCELLED_BY_COACH. Persistence failures are not retried here.
        """
        with self.transaction():
            booking = self.repository.lock(booking_id)
            actor_id = self._require_participant(booking, auth)
            plan = self._rules_for(booking).cancel(
                booking, actor_id, auth.role, self.clock.now(), reason=(reason or "").strip() or None
            )
            return self._apply(booking, plan, auth)

    @BaseService.measure_operation("acknowledge_payment")
    def acknowledge_payment(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        """Mark a confirmed booking as paid. Idempotent; status is unchanged."""
        with self.transaction():
            booking = self.repository.lock(booking_id)
            self._require_participant(booking, auth)
            plan = self._rules_for(booking).acknowledge_payment(booking, self.clock.now())
            return self._apply(booking, plan, auth)

    # -------------------------------------------------------------------- reads

    def get(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        booking = self.repository.get(booking_id)
        self._require_participant(booking, auth)
        return booking_record_from_orm(booking)

    def query_by_participant(
        self,
        auth: AuthContext,
        participant_id: Optional[str] = None,
        role: Optional[ParticipantRole] = None,
    ) -> List[BookingRecordType]:
        """The caller's bookings read from their own mirrors, sorted by start time."""
        user_id = auth.require_identity()
        participant_id = participant_id or user_id
        role = ParticipantRole(role) if role else auth.role
        if participant_id != user_id or role is not auth.role:
            raise ForbiddenException(
                "Participants can only list their own bookings", code="FORBIDDEN_QUERY"
            )
        records = [
            booking_record_from_mirror(mirror)
            for mirror in self.repository.query_by_participant(participant_id, role)
        ]
        return sorted(records, key=lambda record: (record.start_at, record.id))

    def estimate_cost(self, auth: AuthContext, booking_id: str) -> CostEstimate:
        record = self.get(auth, booking_id)
        return estimate_booking_cost(
            record.start_at,
            record.end_at,
            record.coach_ids,
            rate_usd=record.rate_usd,
            coach_rates=getattr(record, "coach_rates", None),
        )

    # ------------------------------------------------------------- maintenance

    def expire_stale_bookings(self, now: Optional[datetime] = None) -> List[str]:
        """
        Cancel requests left unanswered longer than ``booking_request_ttl_hours``.

        Disabled (returns ``[]``) when no TTL is configured. Each booking is
        expired in its own transaction.
        """
        if not self.request_ttl_hours:
            return []
        now = now or self.clock.now()
        cutoff = now - timedelta(hours=self.request_ttl_hours)
        candidates = self.repository.find_stale(GroupBookingCoordinator.EXPIRABLE, cutoff)

        expired: List[str] = []
        for candidate_id in [b.id for b in candidates]:
            with self.transaction():
                booking = self.repository.lock(candidate_id)
                plan = self._rules_for(booking).expire(booking, now)
                if plan.is_noop:
                    continue
                self._apply(booking, plan, None)
            expired.append(candidate_id)

        if expired:
            self.logger.info("Expired %d stale booking requests", len(expired))
        return expired

    # ----------------------------------------------------------------- helpers

    def _rules_for(self, booking: Booking) -> BookingLifecycle:
        if isinstance(booking, GroupBooking):
            return self.group_coordinator
        return self.lifecycle

    def _require_participant(
        self,
        booking: Booking,
        auth: AuthContext,
        role: Optional[ParticipantRole] = None,
    ) -> str:
        """Caller id, after checking role and membership of the booking."""
        user_id = auth.require_identity()
        if role is not None and auth.role is not role:
            raise ForbiddenException(
                f"Only a {role.value} can perform this action",
                code="WRONG_ROLE",
                details={"required_role": role.value, "role": auth.role.value},
            )
        if user_id not in booking.participant_ids(auth.role):
            raise ForbiddenException(
                "You are not a participant of this booking",
                code="NOT_A_PARTICIPANT",
                details={"booking_id": booking.id},
            )
        return user_id

    def _check_conflicts(
        self,
        coach_ids: List[str],
        start_at: datetime,
        end_at: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        if not self.conflict_check_enabled:
            return
        conflicts = self.repository.find_overlapping(
            coach_ids, start_at, end_at, exclude_booking_id=exclude_booking_id
        )
        if conflicts:
            raise BookingConflictException(details={"conflicting_booking_ids": conflicts})

    def _apply(
        self,
        booking: Booking,
        plan: TransitionPlan,
        actor: Optional[AuthContext],
    ) -> BookingRecordType:
        if plan.is_noop:
            self.logger.debug("Booking %s %s already applied", booking.id, plan.operation)
            return booking_record_from_orm(booking)

        previous = booking.status
        self.repository.transition(booking, plan.changes)
        if plan.event is not None:
            self._enqueue_notifications(booking, plan.event, actor, plan.reason)

        self.logger.info(
            "Booking %s %s: %s -> %s (revision %s)",
            booking.id,
            plan.operation,
            previous,
            booking.status,
            booking.revision,
        )
        if isinstance(booking, GroupBooking):
            self.logger.debug("Booking %s votes %s", booking.id, self.group_coordinator.progress(booking))
        return booking_record_from_orm(booking)

    def _enqueue_notifications(
        self,
        booking: Booking,
        event: BookingEvent,
        actor: Optional[AuthContext],
        reason: Optional[str] = None,
    ) -> None:
        """Queue one outbox row per recipient in the current transaction."""
        queued_at = self.clock.now()
        for notification in build_booking_notifications(event, booking, actor, reason):
            self.outbox_repository.enqueue(
                event_type=notification.event_type,
                aggregate_id=booking.id,
                recipient_id=notification.recipient_id,
                payload=notification.to_payload(),
                idempotency_key=(
                    f"booking:{booking.id}:{notification.event_type}:"
                    f"{booking.revision}:{notification.recipient_id}"
                ),
                next_attempt_at=queued_at,
            )

