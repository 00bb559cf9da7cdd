# backend/bookingcore/repositories/event_outbox_repository.py
"""
Repository for notification event outbox operations.

Implements transactional enqueue, pending fetch with locking, and status updates
required for the outbox dispatcher.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable, Optional, cast

from sqlalchemy import Select, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session
import ulid

from ..models.event_outbox import EventOutbox, EventOutboxStatus
from .base_repository import session_dialect

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    """Return timezone-aware utcnow suitable for DB comparisons."""
    return datetime.now(timezone.utc)


class EventOutboxRepository:
    """Data access helpers for event outbox rows."""

    def __init__(self, db: Session):
        self.db = db
        self._dialect = session_dialect(db)

    # ------------------------------------------------------------------ enqueue
    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        recipient_id: str,
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> EventOutbox:
        """
        Insert an outbox row for one recipient unless the idempotency key exists.

        Returns the persisted row (existing or newly created). Nothing is
        committed here; the row becomes visible with the caller's transaction.
        """
        payload = payload or {}
        next_attempt = next_attempt_at or _now_utc()
        key = idempotency_key or f"{event_type}:{aggregate_id}:{recipient_id}:{int(next_attempt.timestamp())}"

        event_id = str(ulid.ULID())
        values = dict(
            id=event_id,
            event_type=event_type,
            aggregate_id=aggregate_id,
            recipient_id=recipient_id,
            payload=payload,
            idempotency_key=key,
            status=EventOutboxStatus.PENDING.value,
            attempt_count=0,
            next_attempt_at=next_attempt,
            created_at=next_attempt,
            updated_at=next_attempt,
        )

        inserted_id: Optional[str] = None

        if self._dialect == "postgresql":
            pg_stmt = (
                pg_insert(EventOutbox)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
                .returning(EventOutbox.id)
            )
            inserted_value = self.db.execute(pg_stmt).scalar_one_or_none()
            if inserted_value is not None:
                inserted_id = cast(str, inserted_value)
        else:
            stmt = insert(EventOutbox).values(**values)
            if self._dialect == "sqlite":
                stmt = stmt.prefix_with("OR IGNORE")
            result = self.db.execute(stmt)
            if getattr(result, "rowcount", 0):
                inserted_id = event_id

        if inserted_id:
            self.db.flush()
            row = cast(Optional[EventOutbox], self.db.get(EventOutbox, inserted_id))
            if row is None:
                raise RuntimeError("Inserted outbox row could not be reloaded")
            return row

        # Existing row - fetch and return without mutating attempt counters
        existing_result = self.db.execute(
            select(EventOutbox).where(EventOutbox.idempotency_key == key)
        )
        existing = cast(Optional[EventOutbox], existing_result.scalar_one_or_none())
        if existing is None:
            raise RuntimeError("Outbox row not found after enqueue conflict")
        return existing

    # ---------------------------------------------------------------- fetchers
    def fetch_pending(self, limit: int = 200, now: Optional[datetime] = None) -> list[EventOutbox]:
        """Return pending events eligible for delivery ordered by attempt time."""
        cutoff = now or _now_utc()
        stmt: Select[Any] = (
            select(EventOutbox)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.next_attempt_at <= cutoff)
            .order_by(EventOutbox.next_attempt_at.asc(), EventOutbox.id.asc())
            .limit(limit)
        )
        if self._dialect == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)

        result = self.db.execute(stmt)
        return cast(list[EventOutbox], result.scalars().all())

    def list_for_aggregate(self, aggregate_id: str) -> list[EventOutbox]:
        """All outbox rows of one booking, oldest first."""
        stmt = (
            select(EventOutbox)
            .where(EventOutbox.aggregate_id == aggregate_id)
            .order_by(EventOutbox.created_at.asc(), EventOutbox.id.asc())
        )
        return cast(list[EventOutbox], self.db.execute(stmt).scalars().all())

    def claim(self, event_id: str, now: Optional[datetime] = None) -> Optional[EventOutbox]:
        """
        Lock one due PENDING row for delivery.

        Returns None when the row was settled by another dispatcher in the
        meantime. The lock is held until the caller commits or rolls back.
        """
        now = now or _now_utc()
        result = self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.next_attempt_at <= now)
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if not getattr(result, "rowcount", 0):
            return None
        return cast(Optional[EventOutbox], self.db.get(EventOutbox, event_id, populate_existing=True))

    # ------------------------------------------------------------- state updates
    def mark_sent(self, event_id: str, attempt_count: int, now: Optional[datetime] = None) -> None:
        """Update row to SENT state."""
        now = now or _now_utc()
        self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .values(
                status=EventOutboxStatus.SENT.value,
                attempt_count=attempt_count,
                last_error=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()

    def mark_failed(
        self,
        event_id: str,
        *,
        attempt_count: int,
        backoff_seconds: int,
        error: str | None = None,
        terminal: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Update row after delivery failure."""
        now = now or _now_utc()
        values: dict[str, Any] = {
            "attempt_count": attempt_count,
            "updated_at": now,
            "last_error": (error[:1000] if error else None),
        }
        if terminal:
            values["status"] = EventOutboxStatus.FAILED.value
            values["next_attempt_at"] = now
        else:
            values["status"] = EventOutboxStatus.PENDING.value
            values["next_attempt_at"] = now + timedelta(seconds=max(backoff_seconds, 1))

        self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()

    def reset_failed(self, event_ids: Iterable[str], now: Optional[datetime] = None) -> None:
        """Reset failed rows back to pending (maintenance helper)."""
        ids = list(event_ids)
        if not ids:
            return
        now = now or _now_utc()
        self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id.in_(ids))
            .values(
                status=EventOutboxStatus.PENDING.value,
                attempt_count=0,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
