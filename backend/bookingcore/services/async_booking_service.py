# backend/bookingcore/services/async_booking_service.py
"""
Async facade over ``BookingService``.

Every public operation is a coroutine that runs the synchronous service in a
worker thread (``asyncio.to_thread``) with a session of its own, so callers
on an event loop never block on the database. After a successful mutation
the pending outbox is dispatched best-effort; a dispatch failure is logged
and never reaches the caller.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import Clock, SystemClock
from ..core.enums import ParticipantRole
from ..principal import AuthContext
from .booking_service import BookingRecordType, BookingService
from .notification_channel import NotificationChannel
from .notification_dispatcher import DispatchSummary, dispatch_pending_notifications
from .rate_calculator import CostEstimate


class AsyncBookingService:
    """Coroutine versions of the booking operations."""

    def __init__(
        self,
        session_factory: Union[sessionmaker, Callable[[], Session]],
        clock: Optional[Clock] = None,
        channel_factory: Optional[Callable[[Session], NotificationChannel]] = None,
        dispatch_after_commit: bool = True,
        **service_options: Any,
    ):
        self.session_factory = session_factory
        self.clock: Clock = clock or SystemClock()
        self.channel_factory = channel_factory
        self.dispatch_after_commit = dispatch_after_commit
        self.service_options = service_options

    # ----------------------------------------------------------------- plumbing

    def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        db = self.session_factory()
        try:
            service = BookingService(db, clock=self.clock, **self.service_options)
            return getattr(service, method)(*args, **kwargs)
        finally:
            db.close()

    async def _run(self, method: str, *args: Any, mutates: bool = True, **kwargs: Any) -> Any:
        result = await asyncio.to_thread(self._call, method, *args, **kwargs)
        if mutates and self.dispatch_after_commit:
            await self.dispatch_notifications()
        return result

    async def dispatch_notifications(self) -> Optional[DispatchSummary]:
        """Deliver pending notifications; failures are logged, not raised."""
        return await asyncio.to_thread(
            dispatch_pending_notifications, self.session_factory, self.clock, self.channel_factory
        )

    # --------------------------------------------------------------- operations

    async def create_booking(
        self,
        auth: AuthContext,
        client_ids: List[str],
        coach_ids: List[str],
        start_at: datetime,
        end_at: datetime,
        location: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BookingRecordType:
        return await self._run(
            "create_booking", auth, client_ids, coach_ids, start_at, end_at, location, notes
        )

    async def accept_as_coach(
        self,
        auth: AuthContext,
        booking_id: str,
        rate: Optional[Union[Decimal, float, str]] = None,
        note: Optional[str] = None,
    ) -> BookingRecordType:
        return await self._run("accept_as_coach", auth, booking_id, rate=rate, note=note)

    async def reject_as_coach(
        self, auth: AuthContext, booking_id: str, reason: Optional[str] = None
    ) -> BookingRecordType:
        return await self._run("reject_as_coach", auth, booking_id, reason=reason)

    async def confirm_as_client(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        return await self._run("confirm_as_client", auth, booking_id)

    async def decline_as_client(
        self, auth: AuthContext, booking_id: str, reason: str
    ) -> BookingRecordType:
        return await self._run("decline_as_client", auth, booking_id, reason)

    async def withdraw(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        return await self._run("withdraw", auth, booking_id)

    async def reschedule(
        self, auth: AuthContext, booking_id: str, start_at: datetime, end_at: datetime
    ) -> BookingRecordType:
        return await self._run("reschedule", auth, booking_id, start_at, end_at)

    async def cancel(
        self, auth: AuthContext, booking_id: str, reason: Optional[str] = None
    ) -> BookingRecordType:
        return await self._run("cancel", auth, booking_id, reason=reason)

    async def acknowledge_payment(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        return await self._run("acknowledge_payment", auth, booking_id)

    async def get(self, auth: AuthContext, booking_id: str) -> BookingRecordType:
        return await self._run("get", auth, booking_id, mutates=False)

    async def query_by_participant(
        self,
        auth: AuthContext,
        participant_id: Optional[str] = None,
        role: Optional[ParticipantRole] = None,
    ) -> List[BookingRecordType]:
        return await self._run(
            "query_by_participant", auth, participant_id=participant_id, role=role, mutates=False
        )

    async def estimate_cost(self, auth: AuthContext, booking_id: str) -> CostEstimate:
        return await self._run("estimate_cost", auth, booking_id, mutates=False)

    async def expire_stale_bookings(self, now: Optional[datetime] = None) -> List[str]:
        return await self._run("expire_stale_bookings", now=now)
