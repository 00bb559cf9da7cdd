# backend/bookingcore/models/booking.py
"""
Booking models for the negotiation core.

One logical booking is stored as:

- a primary ``bookings`` row (the single source of truth), polymorphic on
  ``kind`` so simple and group bookings are distinct mapped classes,
- one ``booking_participant_votes`` row per participant of a group booking,
  holding that participant's acceptance/confirmation, rate and note, and
- one ``booking_mirrors`` row per listed coach and per listed client, a
  denormalized copy used for per-participant queries.

All three are written inside the same database transaction by
``BookingRepository``; no mirror ever exists without its primary.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON
import ulid

from ..core.enums import ParticipantRole
from ..database import Base


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    REQUESTED = "REQUESTED"  # Created by a client, waiting on the coach side
    PARTIALLY_ACCEPTED = "PARTIALLY_ACCEPTED"  # Group: some coaches accepted
    PENDING_ACCEPTANCE = "PENDING_ACCEPTANCE"  # Coach side done, waiting on clients
    PARTIALLY_CONFIRMED = "PARTIALLY_CONFIRMED"  # Group: some clients confirmed
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"  # Coach turned the request down
    DECLINED_BY_CLIENT = "DECLINED_BY_CLIENT"
    CANCELLED = "CANCELLED"  # Cancelled by a client (or expired)
    CANCELLED_BY_COACH = "CANCELLED_BY_COACH"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class BookingKind(str, Enum):
    SIMPLE = "simple"
    GROUP = "group"


# Statuses that hold a coach's time slot (used for overlap checks and expiry)
ACTIVE_BOOKING_STATUSES = frozenset(
    {
        BookingStatus.REQUESTED,
        BookingStatus.PARTIALLY_ACCEPTED,
        BookingStatus.PENDING_ACCEPTANCE,
        BookingStatus.PARTIALLY_CONFIRMED,
        BookingStatus.CONFIRMED,
    }
)


def _new_id() -> str:
    return str(ulid.ULID())


class ReplicatedBookingFields:
    """
    Columns carried identically by the primary row and every mirror.

    A transition delta may only name these columns (plus the vote snapshots
    on mirrors); see ``BookingRepository.transition``.
    """

    kind = Column(String(10), nullable=False)
    client_ids = Column(JSON, nullable=False)
    coach_ids = Column(JSON, nullable=False)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    location = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    coach_note = Column(Text, nullable=True)

    status = Column(String(30), nullable=False, default=BookingStatus.REQUESTED.value)
    rate_usd = Column(Numeric(10, 2), nullable=True)
    payment_status = Column(String(10), nullable=False, default=PaymentStatus.UNPAID.value)
    revision = Column(Integer, nullable=False, default=0)

    rejection_reason = Column(Text, nullable=True)
    client_decline_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    confirmed_by_id = Column(String(64), nullable=True)
    declined_by_id = Column(String(64), nullable=True)
    cancelled_by_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    pending_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    rescheduled_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_group_booking(self) -> bool:
        """Derived from participant counts, never trusted from storage."""
        return len(self.coach_ids or []) > 1 or len(self.client_ids or []) > 1


REPLICATED_FIELDS = frozenset(
    name for name, value in vars(ReplicatedBookingFields).items() if isinstance(value, Column)
)


class Booking(ReplicatedBookingFields, Base):
    """
    Primary booking row.

    Subclassed by ``SimpleBooking`` (one coach, one client) and
    ``GroupBooking``; the discriminator is decided once at creation.
    """

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=_new_id)

    mirrors = relationship(
        "BookingMirror",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"polymorphic_on": "kind"}

    __table_args__ = (
        CheckConstraint("start_at < end_at", name="ck_bookings_time_order"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_start_at", "start_at"),
    )

    def participant_ids(self, role: Optional[ParticipantRole] = None) -> List[str]:
        """Ordered participant ids, optionally restricted to one side."""
        if role is ParticipantRole.COACH:
            return list(self.coach_ids or [])
        if role is ParticipantRole.CLIENT:
            return list(self.client_ids or [])
        return list(self.coach_ids or []) + list(self.client_ids or [])

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.id} status={self.status}>"


class SimpleBooking(Booking):
    """Single coach, single client booking."""

    __mapper_args__ = {"polymorphic_identity": BookingKind.SIMPLE.value}


class GroupBooking(Booking):
    """Booking with several coaches and/or several clients."""

    __mapper_args__ = {"polymorphic_identity": BookingKind.GROUP.value}

    votes = relationship(
        "ParticipantVote",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ParticipantVote.position",
    )

    def votes_for(self, role: ParticipantRole) -> List["ParticipantVote"]:
        return [vote for vote in self.votes if vote.role == role.value]

    def coach_rates(self) -> Dict[str, Any]:
        return {
            vote.participant_id: vote.rate
            for vote in self.votes_for(ParticipantRole.COACH)
            if vote.rate is not None
        }

    def coach_acceptances(self) -> Dict[str, bool]:
        return {vote.participant_id: bool(vote.accepted) for vote in self.votes_for(ParticipantRole.COACH)}

    def client_confirmations(self) -> Dict[str, bool]:
        return {vote.participant_id: bool(vote.accepted) for vote in self.votes_for(ParticipantRole.CLIENT)}

    def vote_of(self, participant_id: str, role: ParticipantRole) -> Optional["ParticipantVote"]:
        for vote in self.votes_for(role):
            if vote.participant_id == participant_id:
                return vote
        return None

    def vote_snapshot(self) -> Dict[str, Dict[str, Any]]:
        """
        JSON-safe vote maps as stored on mirrors and shown to participants.

        Acceptances are only exposed when there is more than one coach and
        confirmations only when there is more than one client.
        """
        return {
            "coach_rates": {k: str(v) for k, v in self.coach_rates().items()},
            "coach_acceptances": self.coach_acceptances() if len(self.coach_ids or []) > 1 else {},
            "client_confirmations": (
                self.client_confirmations() if len(self.client_ids or []) > 1 else {}
            ),
        }


class ParticipantVote(Base):
    """
    One participant's commitment to a group booking.

    For coaches ``accepted`` is the acceptance (with optional rate/note); for
    clients it is the confirmation. Rows are merged one key at a time so
    concurrent votes from different participants never overwrite each other.
    """

    __tablename__ = "booking_participant_votes"

    id = Column(String(26), primary_key=True, default=_new_id)
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    participant_id = Column(String(64), nullable=False)
    role = Column(String(10), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    accepted = Column(Boolean, nullable=False, default=False)
    rate = Column(Numeric(10, 2), nullable=True)
    note = Column(Text, nullable=True)
    voted_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("GroupBooking", back_populates="votes")

    __table_args__ = (
        UniqueConstraint(
            "booking_id", "participant_id", "role", name="uq_booking_participant_vote"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ParticipantVote {self.booking_id} {self.role}:{self.participant_id} "
            f"accepted={self.accepted}>"
        )


class BookingMirror(ReplicatedBookingFields, Base):
    """Copy of a booking stored under one participant's namespace."""

    __tablename__ = "booking_mirrors"

    id = Column(String(26), primary_key=True, default=_new_id)
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id = Column(String(64), nullable=False)
    owner_role = Column(String(10), nullable=False)

    coach_rates = Column(JSON, nullable=True)
    coach_acceptances = Column(JSON, nullable=True)
    client_confirmations = Column(JSON, nullable=True)

    booking = relationship("Booking", back_populates="mirrors")

    __table_args__ = (
        UniqueConstraint("booking_id", "owner_id", "owner_role", name="uq_booking_mirror_owner"),
        Index("ix_booking_mirrors_owner", "owner_id", "owner_role"),
    )

    def __repr__(self) -> str:
        return f"<BookingMirror {self.booking_id} {self.owner_role}:{self.owner_id} status={self.status}>"
