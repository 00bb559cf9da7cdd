from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from bookingcore.core.enums import ParticipantRole
from bookingcore.core.exceptions import NotFoundException, RepositoryException
from bookingcore.models.booking import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingMirror,
    BookingStatus,
    GroupBooking,
    ParticipantVote,
    SimpleBooking,
)
from bookingcore.repositories.base_repository import DEFAULT_DIALECT, session_dialect
from bookingcore.repositories.booking_repository import BookingRepository
from bookingcore.repositories.event_outbox_repository import EventOutboxRepository
from tests.factories.booking_builders import at


@pytest.fixture
def repository(db):
    return BookingRepository(db)


def create(repository, clock, client_ids=("c1",), coach_ids=("s1",), start=None, end=None):
    return repository.create(
        client_ids=list(client_ids),
        coach_ids=list(coach_ids),
        start_at=start or at(9),
        end_at=end or at(10),
        created_at=clock.now(),
    )


def test_create_picks_subclass_from_participant_counts(db, repository, clock):
    simple = create(repository, clock)
    group = create(repository, clock, client_ids=("c1", "c2"), coach_ids=("s2",))
    db.commit()
    db.expire_all()

    assert isinstance(repository.get(simple.id), SimpleBooking)
    reloaded = repository.get(group.id)
    assert isinstance(reloaded, GroupBooking)
    assert [(v.role, v.participant_id) for v in reloaded.votes] == [
        ("coach", "s2"),
        ("client", "c1"),
        ("client", "c2"),
    ]
    assert db.query(Booking).count() == 2
    assert db.query(Booking).filter(Booking.status == BookingStatus.REQUESTED.value).count() == 2


def test_simple_bookings_have_no_votes(db, repository, clock):
    booking = create(repository, clock)
    db.commit()
    assert db.query(ParticipantVote).filter(ParticipantVote.booking_id == booking.id).count() == 0
    assert len(repository.mirrors_for(booking.id)) == 2


def test_get_and_lock_unknown_booking(repository):
    with pytest.raises(NotFoundException):
        repository.get("01HZZZZZZZZZZZZZZZZZZZZZZZ")
    with pytest.raises(NotFoundException) as exc_info:
        repository.lock("01HZZZZZZZZZZZZZZZZZZZZZZZ")
    assert exc_info.value.code == "BOOKING_NOT_FOUND"


def test_transition_updates_primary_and_mirrors(db, repository, clock):
    booking = create(repository, clock)
    repository.transition(
        booking,
        {"status": BookingStatus.PENDING_ACCEPTANCE.value, "rate_usd": Decimal("45"), "updated_at": clock.now()},
    )
    db.commit()
    db.expire_all()

    booking = repository.get(booking.id)
    assert booking.revision == 1
    for mirror in repository.mirrors_for(booking.id):
        assert mirror.status == BookingStatus.PENDING_ACCEPTANCE.value
        assert mirror.rate_usd == Decimal("45")
        assert mirror.revision == 1


def test_transition_rejects_non_replicated_fields(repository, clock):
    booking = create(repository, clock)
    with pytest.raises(ValueError):
        repository.transition(booking, {"owner_id": "someone"})


def test_transition_limited_to_given_participants(db, repository, clock):
    booking = create(repository, clock)
    repository.transition(booking, {"coach_note": "private"}, participant_ids=["s1"])
    db.commit()
    db.expire_all()

    notes = {m.owner_id: m.coach_note for m in repository.mirrors_for(booking.id)}
    assert notes == {"s1": "private", "c1": None}


def test_transition_fails_when_a_mirror_is_missing(db, repository, clock):
    booking = create(repository, clock)
    db.commit()
    db.query(BookingMirror).filter(BookingMirror.owner_id == "c1").delete()
    db.commit()
    booking = repository.lock(booking.id)

    with pytest.raises(RepositoryException):
        repository.transition(booking, {"status": BookingStatus.CONFIRMED.value})
    db.rollback()


def test_merge_vote_only_touches_one_row(db, repository, clock):
    booking = create(repository, clock, coach_ids=("A", "B"))
    repository.merge_vote(booking, "A", ParticipantRole.COACH, accepted=True, voted_at=clock.now(), rate=Decimal("30"))
    vote = repository.merge_vote(
        booking, "A", ParticipantRole.COACH, accepted=True, voted_at=clock.now(), note="hello"
    )

    assert vote.rate == Decimal("30")
    assert vote.note == "hello"
    assert booking.coach_acceptances() == {"A": True, "B": False}
    assert booking.coach_rates() == {"A": Decimal("30")}


def test_merge_vote_rejects_unknown_participant(repository, clock):
    booking = create(repository, clock, coach_ids=("A", "B"))
    with pytest.raises(ValueError):
        repository.merge_vote(booking, "Z", ParticipantRole.COACH, accepted=True, voted_at=clock.now())


def test_reset_votes_keeps_offers(repository, clock):
    booking = create(repository, clock, coach_ids=("A", "B"))
    repository.merge_vote(booking, "A", ParticipantRole.COACH, accepted=True, voted_at=clock.now(), rate=Decimal("30"))
    repository.reset_votes(booking)

    vote = booking.vote_of("A", ParticipantRole.COACH)
    assert vote.accepted is False
    assert vote.voted_at is None
    assert vote.rate == Decimal("30")


def test_vote_snapshot_hides_single_side_maps(repository, clock):
    booking = create(repository, clock, client_ids=("c1", "c2"), coach_ids=("s1",))
    snapshot = booking.vote_snapshot()
    assert snapshot["coach_acceptances"] == {}
    assert snapshot["client_confirmations"] == {"c1": False, "c2": False}


def test_find_overlapping_ignores_inactive_and_excluded(db, repository, clock):
    first = create(repository, clock, start=at(9), end=at(10))
    second = create(repository, clock, client_ids=("c2",), start=at(9, 30), end=at(10, 30))
    repository.transition(second, {"status": BookingStatus.REJECTED.value})
    db.commit()

    assert repository.find_overlapping(["s1"], at(9, 45), at(11)) == [first.id]
    assert repository.find_overlapping(["s1"], at(9, 45), at(11), exclude_booking_id=first.id) == []
    assert repository.find_overlapping(["s1"], at(10), at(11)) == []
    assert repository.find_overlapping([], at(9), at(10)) == []
    assert BookingStatus.REJECTED not in ACTIVE_BOOKING_STATUSES


def test_find_stale(db, repository, clock):
    old = create(repository, clock)
    clock.advance(hours=48)
    create(repository, clock, client_ids=("c2",), coach_ids=("s2",))
    db.commit()

    stale = repository.find_stale([BookingStatus.REQUESTED], created_before=clock.now())
    assert [b.id for b in stale] == [old.id]


def test_query_by_participant_uses_owner_role(db, repository, clock):
    booking = create(repository, clock)
    db.commit()
    assert [m.booking_id for m in repository.query_by_participant("c1", ParticipantRole.CLIENT)] == [booking.id]
    assert repository.query_by_participant("c1", ParticipantRole.COACH) == []


def test_dialect_comes_from_the_bound_engine(db, repository):
    assert session_dialect(db) == "sqlite"
    assert repository.dialect_name == "sqlite"
    assert EventOutboxRepository(db)._dialect == "sqlite"


def test_unbound_session_reports_default_dialect():
    session = Session()
    try:
        assert session_dialect(session) == DEFAULT_DIALECT == "postgresql"
        assert BookingRepository(session).dialect_name == DEFAULT_DIALECT
        assert EventOutboxRepository(session)._dialect == DEFAULT_DIALECT
    finally:
        session.close()
