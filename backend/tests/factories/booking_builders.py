"""Builders for callers, instants and bookings used across the booking core tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

from bookingcore.core.enums import ParticipantRole
from bookingcore.principal import AuthContext
from bookingcore.services.booking_service import BookingRecordType, BookingService


def as_client(user_id: str, name: Optional[str] = None) -> AuthContext:
    return AuthContext(user_id=user_id, role=ParticipantRole.CLIENT, display_name=name)


def as_coach(user_id: str, name: Optional[str] = None) -> AuthContext:
    return AuthContext(user_id=user_id, role=ParticipantRole.COACH, display_name=name)


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    """A UTC instant on January ``day``, 2030."""
    return datetime(2030, 1, day, hour, minute, tzinfo=timezone.utc)


def identity_headers(user_id: str, role: str, name: Optional[str] = None) -> Dict[str, str]:
    headers = {"X-User-Id": user_id, "X-User-Role": role}
    if name:
        headers["X-User-Name"] = name
    return headers


def request_booking(
    service: BookingService,
    client_ids: Sequence[str] = ("c1",),
    coach_ids: Sequence[str] = ("s1",),
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    requested_by: Optional[str] = None,
    **extra: Optional[str],
) -> BookingRecordType:
    """Create a booking as the first listed client (or ``requested_by``)."""
    return service.create_booking(
        as_client(requested_by or client_ids[0]),
        list(client_ids),
        list(coach_ids),
        start_at or at(9),
        end_at or at(9, 30),
        **extra,
    )
