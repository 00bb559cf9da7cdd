# backend/bookingcore/repositories/notification_repository.py
"""Repository for the in-app notification inbox."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.notification import Notification
from .base_repository import BaseRepository


class NotificationRepository(BaseRepository[Notification]):
    def __init__(self, db: Session):
        super().__init__(db, Notification)

    def create_notification(
        self,
        *,
        recipient_id: str,
        title: str,
        body: str,
        booking_id: Optional[str] = None,
        sender_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> Notification:
        return self.add(
            Notification(
                recipient_id=recipient_id,
                title=title,
                body=body,
                booking_id=booking_id,
                sender_id=sender_id,
                event_type=event_type,
                delivered=False,
            )
        )

    def list_for_recipient(self, recipient_id: str, undelivered_only: bool = False) -> List[Notification]:
        query = self._build_query().filter(Notification.recipient_id == recipient_id)
        if undelivered_only:
            query = query.filter(Notification.delivered.is_(False))
        return self._execute_query(query.order_by(Notification.created_at.asc(), Notification.id.asc()))

    def list_for_booking(self, booking_id: str) -> List[Notification]:
        query = self._build_query().filter(Notification.booking_id == booking_id)
        return self._execute_query(query.order_by(Notification.created_at.asc(), Notification.id.asc()))
