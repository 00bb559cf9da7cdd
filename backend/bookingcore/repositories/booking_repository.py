# backend/bookingcore/repositories/booking_repository.py
"""
Booking Repository for the booking negotiation core.

Owns every write to the three booking tables:

- ``bookings``: the primary row (source of truth)
- ``booking_participant_votes``: per-participant votes of group bookings
- ``booking_mirrors``: one denormalized copy per listed participant

All methods run inside the caller's transaction and only flush; the
service commits or rolls back, so the primary and its mirrors always move
together.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import ulid

from ..core.enums import ParticipantRole
from ..core.exceptions import NotFoundException, RepositoryException
from ..models.booking import (
    ACTIVE_BOOKING_STATUSES,
    REPLICATED_FIELDS,
    Booking,
    BookingKind,
    BookingMirror,
    BookingStatus,
    GroupBooking,
    ParticipantVote,
    PaymentStatus,
    SimpleBooking,
)
from .base_repository import BaseRepository


def _copy_value(value: Any) -> Any:
    """Lists are copied so a mirror never shares a JSON value with its primary."""
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking replicas and group votes."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    # ------------------------------------------------------------------ create

    def create(
        self,
        *,
        client_ids: Sequence[str],
        coach_ids: Sequence[str],
        start_at: datetime,
        end_at: datetime,
        created_at: datetime,
        location: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Write the primary row, its votes and one mirror per participant.

        The subclass (simple or group) is decided here from the participant
        counts and never changes afterwards.
        """
        is_group = len(coach_ids) > 1 or len(client_ids) > 1
        model = GroupBooking if is_group else SimpleBooking
        booking = model(
            id=str(ulid.ULID()),
            client_ids=list(client_ids),
            coach_ids=list(coach_ids),
            start_at=start_at,
            end_at=end_at,
            location=location,
            notes=notes,
            status=BookingStatus.REQUESTED.value,
            payment_status=PaymentStatus.UNPAID.value,
            revision=0,
            created_at=created_at,
            updated_at=created_at,
        )

        if isinstance(booking, GroupBooking):
            position = 0
            for role, ids in (
                (ParticipantRole.COACH, coach_ids),
                (ParticipantRole.CLIENT, client_ids),
            ):
                for participant_id in ids:
                    booking.votes.append(
                        ParticipantVote(
                            id=str(ulid.ULID()),
                            participant_id=participant_id,
                            role=role.value,
                            position=position,
                            accepted=False,
                        )
                    )
                    position += 1

        snapshot = booking.vote_snapshot() if isinstance(booking, GroupBooking) else {}
        for role, ids in (
            (ParticipantRole.COACH, coach_ids),
            (ParticipantRole.CLIENT, client_ids),
        ):
            for participant_id in ids:
                mirror = BookingMirror(
                    id=str(ulid.ULID()),
                    owner_id=participant_id,
                    owner_role=role.value,
                    **self._replicated_values(booking),
                )
                for name, value in snapshot.items():
                    setattr(mirror, name, _copy_value(value))
                booking.mirrors.append(mirror)

        self.add(booking)
        self.logger.info(
            "Created %s booking %s with %d mirrors",
            booking.kind,
            booking.id,
            len(booking.mirrors),
        )
        return booking

    # -------------------------------------------------------------------- reads

    def get(self, booking_id: str) -> Booking:
        """Return the primary row or raise ``NotFoundException``."""
        booking = self.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException(
                f"Booking {booking_id} not found",
                code="BOOKING_NOT_FOUND",
                details={"booking_id": booking_id},
            )
        return booking

    def lock(self, booking_id: str) -> Booking:
        """
        Reload the primary row, locking it on PostgreSQL.

        Serializes writers of one booking so a vote merge followed by the
        aggregate status recomputation sees every committed vote. Dialects
        without ``FOR UPDATE`` (SQLite) take the write lock with a no-op
        update of the row before reading it.
        """
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        try:
            if self.dialect_name == "postgresql":
                stmt = stmt.with_for_update()
            else:
                self.db.execute(
                    update(Booking)
                    .where(Booking.id == booking_id)
                    .values(revision=Booking.revision)
                    .execution_options(synchronize_session=False)
                )
            booking = self.db.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error("Failed to lock booking %s: %s", booking_id, e)
            raise RepositoryException(f"Failed to lock booking: {str(e)}", e)
        if booking is None:
            raise NotFoundException(
                f"Booking {booking_id} not found",
                code="BOOKING_NOT_FOUND",
                details={"booking_id": booking_id},
            )
        return booking

    def query_by_participant(
        self, participant_id: str, role: ParticipantRole
    ) -> List[BookingMirror]:
        """Mirrors stored under one participant. Order is not guaranteed."""
        query = self.db.query(BookingMirror).filter(
            BookingMirror.owner_id == participant_id,
            BookingMirror.owner_role == role.value,
        )
        return self._execute_query(query)

    def mirrors_for(self, booking_id: str) -> List[BookingMirror]:
        query = self.db.query(BookingMirror).filter(BookingMirror.booking_id == booking_id)
        return self._execute_query(query)

    def find_overlapping(
        self,
        coach_ids: Iterable[str],
        start_at: datetime,
        end_at: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> List[str]:
        """
        Ids of active bookings of any of ``coach_ids`` overlapping the window.

        Uses the coaches' mirrors so no JSON containment query is needed.
        """
        ids = list(coach_ids)
        if not ids:
            return []
        query = self.db.query(BookingMirror.booking_id).filter(
            BookingMirror.owner_role == ParticipantRole.COACH.value,
            BookingMirror.owner_id.in_(ids),
            BookingMirror.status.in_([s.value for s in ACTIVE_BOOKING_STATUSES]),
            BookingMirror.start_at < end_at,
            BookingMirror.end_at > start_at,
        )
        if exclude_booking_id:
            query = query.filter(BookingMirror.booking_id != exclude_booking_id)
        try:
            rows = query.distinct().all()
        except SQLAlchemyError as e:
            self.logger.error("Overlap query failed: %s", e)
            raise RepositoryException(f"Query failed: {str(e)}", e)
        return [row[0] for row in rows]

    def find_stale(
        self,
        statuses: Iterable[BookingStatus],
        created_before: datetime,
        limit: Optional[int] = None,
    ) -> List[Booking]:
        """Bookings still in ``statuses`` that were created before the cutoff."""
        query = (
            self._build_query()
            .filter(Booking.status.in_([s.value for s in statuses]))
            .filter(Booking.created_at < created_before)
            .order_by(Booking.created_at.asc())
        )
        if limit:
            query = query.limit(limit)
        return self._execute_query(query)

    # ------------------------------------------------------------------- writes

    def transition(
        self,
        booking: Booking,
        delta: Mapping[str, Any],
        participant_ids: Optional[Iterable[str]] = None,
    ) -> Booking:
        """
        Apply ``delta`` to the primary and to the mirrors of ``participant_ids``.

        ``participant_ids`` defaults to every listed participant. Each call
        bumps ``revision``; group bookings also refresh the vote snapshots on
        the mirrors. Raises ``RepositoryException`` (after which the caller
        must roll back) if a required mirror is missing or the flush fails.
        """
        unknown = set(delta) - REPLICATED_FIELDS
        if unknown:
            raise ValueError(f"Not a replicated booking field: {', '.join(sorted(unknown))}")

        changes: Dict[str, Any] = dict(delta)
        changes["revision"] = (booking.revision or 0) + 1
        for name, value in changes.items():
            setattr(booking, name, _copy_value(value))

        owners = set(participant_ids) if participant_ids is not None else set(booking.participant_ids())
        mirrors = [m for m in booking.mirrors if m.owner_id in owners]
        mirrored_owners = {m.owner_id for m in mirrors}
        missing = owners - mirrored_owners
        if missing:
            raise RepositoryException(
                f"Booking {booking.id} has no mirror for {', '.join(sorted(missing))}"
            )

        snapshot = booking.vote_snapshot() if isinstance(booking, GroupBooking) else {}
        for mirror in mirrors:
            for name, value in changes.items():
                setattr(mirror, name, _copy_value(value))
            for name, value in snapshot.items():
                setattr(mirror, name, _copy_value(value))

        self.flush()
        self.logger.debug(
            "Booking %s revision %s applied to %d mirrors", booking.id, booking.revision, len(mirrors)
        )
        return booking

    def merge_vote(
        self,
        booking: GroupBooking,
        participant_id: str,
        role: ParticipantRole,
        *,
        accepted: bool,
        voted_at: datetime,
        rate: Optional[Decimal] = None,
        note: Optional[str] = None,
    ) -> ParticipantVote:
        """
        Upsert one participant's vote without touching any other vote row.

        ``rate`` and ``note`` are only written when given, so a later vote
        never erases an earlier offer.
        """
        ids = booking.participant_ids(role)
        if participant_id not in ids:
            raise ValueError(f"{participant_id} is not a listed {role.value} of booking {booking.id}")
        position = ids.index(participant_id)
        if role is ParticipantRole.CLIENT:
            position += len(booking.coach_ids or [])

        values: Dict[str, Any] = {
            "id": str(ulid.ULID()),
            "booking_id": booking.id,
            "participant_id": participant_id,
            "role": role.value,
            "position": position,
            "accepted": accepted,
            "rate": rate,
            "note": note,
            "voted_at": voted_at,
        }
        merged: Dict[str, Any] = {"accepted": accepted, "voted_at": voted_at}
        if rate is not None:
            merged["rate"] = rate
        if note is not None:
            merged["note"] = note

        conflict_cols = ["booking_id", "participant_id", "role"]
        try:
            if self.dialect_name == "postgresql":
                stmt = pg_insert(ParticipantVote).values(**values)
                self.db.execute(stmt.on_conflict_do_update(index_elements=conflict_cols, set_=merged))
            elif self.dialect_name == "sqlite":
                stmt = sqlite_insert(ParticipantVote).values(**values)
                self.db.execute(stmt.on_conflict_do_update(index_elements=conflict_cols, set_=merged))
            else:
                result = self.db.execute(
                    update(ParticipantVote)
                    .where(ParticipantVote.booking_id == booking.id)
                    .where(ParticipantVote.participant_id == participant_id)
                    .where(ParticipantVote.role == role.value)
                    .values(**merged)
                )
                if not result.rowcount:
                    self.db.add(ParticipantVote(**values))
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error("Vote merge failed for booking %s: %s", booking.id, e)
            raise RepositoryException(f"Failed to record vote: {str(e)}", e)

        self._reload_votes(booking)
        vote = booking.vote_of(participant_id, role)
        if vote is None:
            raise RepositoryException(f"Vote for {participant_id} missing after merge")
        return vote

    def reset_votes(self, booking: GroupBooking, role: Optional[ParticipantRole] = None) -> None:
        """Clear acceptances/confirmations (rates and notes are kept)."""
        stmt = update(ParticipantVote).where(ParticipantVote.booking_id == booking.id)
        if role is not None:
            stmt = stmt.where(ParticipantVote.role == role.value)
        try:
            self.db.execute(stmt.values(accepted=False, voted_at=None))
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error("Vote reset failed for booking %s: %s", booking.id, e)
            raise RepositoryException(f"Failed to reset votes: {str(e)}", e)
        self._reload_votes(booking)

    # ----------------------------------------------------------------- helpers

    def _reload_votes(self, booking: GroupBooking) -> None:
        for vote in list(booking.votes):
            self.db.expire(vote)
        self.db.expire(booking, ["votes"])

    @staticmethod
    def _replicated_values(booking: Booking) -> Dict[str, Any]:
        values = {name: _copy_value(getattr(booking, name)) for name in REPLICATED_FIELDS}
        values["kind"] = (
            BookingKind.GROUP.value if isinstance(booking, GroupBooking) else BookingKind.SIMPLE.value
        )
        return values
