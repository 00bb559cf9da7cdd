from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pydantic import TypeAdapter, ValidationError
import pytest

from bookingcore.models.booking import BookingKind
from bookingcore.schemas.booking import (
    BookingAccept,
    BookingCreate,
    BookingDecline,
    BookingRecord,
    CostEstimateResponse,
    GroupBookingRecord,
    MAX_RATE_USD,
    SimpleBookingRecord,
)

START = datetime(2030, 1, 2, 10, 0, tzinfo=timezone.utc)


def record_data(**overrides):
    data = dict(
        id="01J00000000000000000000000",
        client_ids=["c1"],
        coach_ids=["s1"],
        start_at=START,
        end_at=START + timedelta(minutes=40),
        status="REQUESTED",
        created_at=START - timedelta(days=1),
        updated_at=START - timedelta(days=1),
    )
    data.update(overrides)
    return data


def test_create_normalizes_participants():
    data = BookingCreate(
        client_ids=[" c1 ", "c1", "c2"],
        coach_ids=["s1"],
        start_at=START,
        end_at=START + timedelta(hours=1),
    )
    assert data.client_ids == ["c1", "c2"]
    assert data.kind is BookingKind.GROUP


def test_create_converts_offsets_to_utc():
    offset = timezone(timedelta(hours=2))
    data = BookingCreate(
        client_ids=["c1"],
        coach_ids=["s1"],
        start_at=datetime(2030, 1, 2, 12, 0, tzinfo=offset),
        end_at=datetime(2030, 1, 2, 13, 0, tzinfo=offset),
    )
    assert data.start_at == START
    assert data.start_at.tzinfo == timezone.utc
    assert data.kind is BookingKind.SIMPLE


@pytest.mark.parametrize(
    "overrides",
    [
        {"end_at": START},
        {"end_at": START - timedelta(minutes=1)},
        {"client_ids": []},
        {"client_ids": ["  "]},
        {"coach_ids": ["c1"]},
        {"location": "x" * 501},
        {"unexpected": True},
    ],
)
def test_create_rejects_invalid_requests(overrides):
    data = dict(client_ids=["c1"], coach_ids=["s1"], start_at=START, end_at=START + timedelta(hours=1))
    data.update(overrides)
    with pytest.raises(ValidationError):
        BookingCreate(**data)


def test_accept_accepts_numeric_strings_and_rejects_negatives():
    assert BookingAccept(rate_usd="45.50").rate_usd == Decimal("45.50")
    with pytest.raises(ValidationError):
        BookingAccept(rate_usd=-1)


@pytest.mark.parametrize("rate", ["abc", "NaN", "Infinity", "1e30", MAX_RATE_USD + Decimal("0.01")])
def test_accept_rejects_unparseable_and_out_of_range_rates(rate):
    with pytest.raises(ValidationError):
        BookingAccept(rate_usd=rate)


def test_accept_allows_the_largest_storable_rate():
    assert BookingAccept(rate_usd=MAX_RATE_USD).rate_usd == MAX_RATE_USD


def test_decline_reason_is_stripped():
    assert BookingDecline(reason="  late  ").reason == "late"


def test_record_computed_fields():
    record = SimpleBookingRecord(**record_data(rate_usd=Decimal("45")))
    dumped = record.model_dump(mode="json")

    assert dumped["kind"] == "simple"
    assert dumped["is_group_booking"] is False
    assert dumped["duration_hours"] == 0.5
    assert dumped["estimated_cost"] == 22.5
    assert dumped["rate_usd"] == 45.0


def test_unknown_cost_is_null_not_zero():
    record = SimpleBookingRecord(**record_data())
    assert record.model_dump(mode="json")["estimated_cost"] is None


def test_group_record_cost_uses_coach_rates():
    record = GroupBookingRecord(
        **record_data(coach_ids=["A", "B"], end_at=START + timedelta(hours=1)),
        coach_rates={"A": "30", "B": "20"},
        coach_acceptances={"A": True, "B": True},
    )
    assert record.is_group_booking is True
    assert record.estimated_cost == Decimal("50.00")


def test_record_union_dispatches_on_kind():
    adapter = TypeAdapter(BookingRecord)
    assert isinstance(adapter.validate_python({**record_data(), "kind": "simple"}), SimpleBookingRecord)
    group = adapter.validate_python({**record_data(client_ids=["c1", "c2"]), "kind": "group"})
    assert isinstance(group, GroupBookingRecord)


def test_cost_response_is_known():
    assert CostEstimateResponse(booking_id="b", is_group=False, total=None).is_known is False
    assert CostEstimateResponse(booking_id="b", is_group=False, total=Decimal("1")).is_known is True
