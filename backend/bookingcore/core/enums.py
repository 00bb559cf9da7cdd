# backend/bookingcore/core/enums.py
"""
Core enums for the booking negotiation core.

Booking lifecycle enums live beside the booking model in
``bookingcore.models.booking``; this module holds the values shared with
callers that never touch the ORM.
"""

from enum import Enum


class ParticipantRole(str, Enum):
    """Which side of a booking a participant is on."""

    CLIENT = "client"
    COACH = "coach"

    @property
    def other(self) -> "ParticipantRole":
        return ParticipantRole.COACH if self is ParticipantRole.CLIENT else ParticipantRole.CLIENT
