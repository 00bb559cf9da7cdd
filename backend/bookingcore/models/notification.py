"""
In-app notification inbox.

Rows written by ``DatabaseNotificationChannel``; delivery to devices and read
tracking belong to an external channel that consumes undelivered rows.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, String, Text
import ulid

from ..database import Base


class Notification(Base):
    """A notification addressed to one booking participant."""

    __tablename__ = "notifications"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    recipient_id = Column(String(64), nullable=False)
    sender_id = Column(String(64), nullable=True)
    booking_id = Column(String(26), nullable=True, index=True)
    event_type = Column(String(100), nullable=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    delivered = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (Index("ix_notifications_recipient_delivered", "recipient_id", "delivered"),)
