# backend/bookingcore/services/notification_channel.py
"""
Notification channels used by the outbox dispatcher.

A channel delivers one message to one booking participant and raises
``NotificationDeliveryError`` (or ``NotificationChannelTemporaryError`` for
transient problems) when it cannot.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    NotificationChannelTemporaryError,
    NotificationDeliveryError,
    RepositoryException,
)
from ..repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        booking_id: str,
        *,
        sender_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> None:
        ...


class DatabaseNotificationChannel:
    """Writes undelivered rows to the ``notifications`` inbox."""

    def __init__(self, db: Session):
        self.repository = NotificationRepository(db)

    def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        booking_id: str,
        *,
        sender_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> None:
        if not recipient_id:
            raise NotificationDeliveryError("Notification has no recipient")
        try:
            self.repository.create_notification(
                recipient_id=recipient_id,
                title=title,
                body=body,
                booking_id=booking_id,
                sender_id=sender_id,
                event_type=event_type,
            )
        except (RepositoryException, SQLAlchemyError) as exc:
            raise NotificationChannelTemporaryError(f"Inbox write failed: {exc}") from exc


class LoggingNotificationChannel:
    """Logs each notification; useful for local development."""

    def __init__(self, channel_logger: Optional[logging.Logger] = None):
        self.logger = channel_logger or logger

    def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        booking_id: str,
        *,
        sender_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> None:
        self.logger.info(
            "Notification to %s [%s] %s: %s (booking=%s)",
            recipient_id,
            event_type or "-",
            title,
            body,
            booking_id,
        )


def build_notification_channel(db: Session, kind: Optional[str] = None) -> NotificationChannel:
    """Channel selected by ``settings.notification_channel`` unless ``kind`` is given."""
    kind = kind or settings.notification_channel
    if kind == "logging":
        return LoggingNotificationChannel()
    if kind == "database":
        return DatabaseNotificationChannel(db)
    raise ValueError(f"Unknown notification channel: {kind}")
