from datetime import datetime, timezone

import pytest

from bookingcore.models.booking import BookingStatus, GroupBooking, SimpleBooking
from bookingcore.services.booking_notifications import (
    TEMPLATES,
    BookingEvent,
    build_booking_notifications,
    recipients_for,
    render_notification,
)
from tests.factories.booking_builders import as_client, as_coach

START = datetime(2030, 3, 4, 9, 30, tzinfo=timezone.utc)


def simple_booking():
    return SimpleBooking(
        id="01J00000000000000000000000",
        client_ids=["c1"],
        coach_ids=["s1"],
        start_at=START,
        end_at=START.replace(hour=10),
        status=BookingStatus.REQUESTED.value,
    )


def group_booking():
    return GroupBooking(
        id="01J00000000000000000000001",
        client_ids=["c1", "c2"],
        coach_ids=["s1", "s2"],
        start_at=START,
        end_at=START.replace(hour=10),
        status=BookingStatus.CONFIRMED.value,
    )


def test_every_event_has_a_template():
    assert set(TEMPLATES) == set(BookingEvent)


def test_client_action_notifies_coaches():
    assert recipients_for(BookingEvent.REQUESTED, simple_booking(), as_client("c1")) == ["s1"]


def test_coach_action_notifies_clients():
    assert recipients_for(BookingEvent.ACCEPTED, group_booking(), as_coach("s1")) == ["c1", "c2"]


def test_group_cancellation_also_notifies_co_participants():
    recipients = recipients_for(BookingEvent.CANCELLED, group_booking(), as_client("c1"))
    assert recipients == ["s1", "s2", "c2"]


def test_group_confirmation_does_not_notify_co_clients():
    assert recipients_for(BookingEvent.CONFIRMED, group_booking(), as_client("c1")) == ["s1", "s2"]


def test_system_events_notify_everyone():
    assert recipients_for(BookingEvent.EXPIRED, group_booking(), None) == ["s1", "s2", "c1", "c2"]


@pytest.mark.parametrize(
    "event, title",
    [
        (BookingEvent.REQUESTED, "Booking Requested"),
        (BookingEvent.ACCEPTED, "Action Required: Confirm Booking"),
        (BookingEvent.CONFIRMED, "Booking Confirmed"),
        (BookingEvent.DECLINED, "Booking Declined"),
        (BookingEvent.CANCELLED, "Booking Cancelled"),
        (BookingEvent.PAYMENT_RECEIVED, "Payment Notification"),
        (BookingEvent.RESCHEDULED, "Booking Reschedule Requested"),
    ],
)
def test_titles(event, title):
    assert render_notification(event, simple_booking(), as_client("c1"))[0] == title


def test_body_mentions_actor_date_time_and_reason():
    _, body = render_notification(
        BookingEvent.DECLINED, simple_booking(), as_client("c1", "Casey"), reason="too early"
    )
    assert body == "Casey declined the session on Mar 04, 2030 at 09:30 UTC. Reason: too early"


def test_body_falls_back_to_role_name():
    _, body = render_notification(BookingEvent.ACCEPTED, simple_booking(), as_coach("s1"))
    assert body.startswith("Your coach accepted")


def test_build_notifications_payload():
    notifications = build_booking_notifications(
        BookingEvent.REQUESTED, simple_booking(), as_client("c1", "Casey")
    )
    assert len(notifications) == 1
    payload = notifications[0].to_payload()
    assert payload == {
        "recipient_id": "s1",
        "title": "Booking Requested",
        "body": "Casey requested a session on Mar 04, 2030 at 09:30 UTC.",
        "event_type": "booking.requested",
        "booking_id": "01J00000000000000000000000",
        "sender_id": "c1",
    }
