# backend/bookingcore/services/notification_dispatcher.py
"""
Outbox dispatcher for booking notifications.

Reads committed ``event_outbox`` rows and hands each to a
``NotificationChannel``. Every row is settled in its own commit:

- delivered -> SENT
- failed -> PENDING again after a backoff of 30s, 2m, 10m, 30m, 2h
- failed on the last allowed attempt -> FAILED

Delivery failures are logged and recorded on the row; they never propagate
to the caller and never touch the booking that produced the event.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from time import monotonic
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.exceptions import NotificationChannelTemporaryError
from ..models.event_outbox import EventOutbox
from ..monitoring.prometheus_metrics import PrometheusMetrics
from ..repositories.event_outbox_repository import EventOutboxRepository
from .notification_channel import NotificationChannel, build_notification_channel

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]

SENT = "sent"
RETRY = "retry"
FAILED = "failed"


def _next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


@dataclass
class DispatchSummary:
    sent: int = 0
    retried: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.retried + self.failed

    def record(self, outcome: str) -> None:
        if outcome == SENT:
            self.sent += 1
        elif outcome == RETRY:
            self.retried += 1
        else:
            self.failed += 1


class NotificationDispatcher:
    """Delivers pending outbox rows through one channel."""

    def __init__(
        self,
        db: Session,
        channel: Optional[NotificationChannel] = None,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.repository = EventOutboxRepository(db)
        self.channel = channel or build_notification_channel(db)
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.batch_size = batch_size or settings.outbox_batch_size

    def dispatch_pending(self, limit: Optional[int] = None) -> DispatchSummary:
        """Deliver every row that is due. Returns per-outcome counts."""
        summary = DispatchSummary()
        pending = self.repository.fetch_pending(limit=limit or self.batch_size, now=self.clock.now())
        event_ids = [event.id for event in pending]
        for event_id in event_ids:
            event = self.repository.claim(event_id, now=self.clock.now())
            if event is None:
                self.db.rollback()
                logger.debug("Outbox event %s already settled; skipping", event_id)
                continue
            summary.record(self.deliver(event))
        if summary.total:
            logger.info(
                "Outbox dispatch: sent=%s retried=%s failed=%s",
                summary.sent,
                summary.retried,
                summary.failed,
            )
        return summary

    def deliver(self, event: EventOutbox) -> str:
        """Deliver one row and settle it. Never raises on channel failure."""
        event_id = event.id
        event_type = event.event_type
        attempt_number = (event.attempt_count or 0) + 1
        PrometheusMetrics.record_notification_attempt(event_type)
        payload = dict(event.payload or {})

        try:
            start = monotonic()
            self.channel.send(
                event.recipient_id,
                payload.get("title", ""),
                payload.get("body", ""),
                payload.get("booking_id") or event.aggregate_id,
                sender_id=payload.get("sender_id"),
                event_type=event_type,
            )
            duration = monotonic() - start
            self.repository.mark_sent(event_id, attempt_number, now=self.clock.now())
            self.db.commit()
            PrometheusMetrics.observe_notification_dispatch(event_type, duration)
            PrometheusMetrics.record_notification_outcome(event_type, SENT)
            logger.info(
                "Delivered outbox event %s type=%s attempts=%s",
                event_id,
                event_type,
                attempt_number,
            )
            return SENT
        except NotificationChannelTemporaryError as exc:
            self.db.rollback()
            return self._settle_failure(event_id, event_type, attempt_number, exc, transient=True)
        except Exception as exc:
            self.db.rollback()
            return self._settle_failure(event_id, event_type, attempt_number, exc, transient=False)

    def _settle_failure(
        self, event_id: str, event_type: str, attempt_number: int, exc: Exception, *, transient: bool
    ) -> str:
        backoff = _next_backoff(attempt_number)
        terminal = attempt_number >= self.max_attempts
        self.repository.mark_failed(
            event_id,
            attempt_count=attempt_number,
            backoff_seconds=backoff,
            error=str(exc),
            terminal=terminal,
            now=self.clock.now(),
        )
        self.db.commit()
        PrometheusMetrics.record_notification_outcome(event_type, FAILED if terminal else RETRY)
        if terminal:
            logger.error(
                "Outbox event %s failed permanently after %s attempts",
                event_id,
                attempt_number,
                exc_info=exc,
            )
            return FAILED
        if transient:
            logger.warning(
                "Retrying outbox event %s attempt=%s backoff=%ss: %s",
                event_id,
                attempt_number,
                backoff,
                exc,
            )
        else:
            logger.error(
                "Error delivering outbox event %s; retrying in %ss",
                event_id,
                backoff,
                exc_info=exc,
            )
        return RETRY

    def requeue_failed(self, event_ids: Iterable[str]) -> List[str]:
        """Put FAILED rows back in the queue with a fresh attempt budget."""
        ids = list(event_ids)
        self.repository.reset_failed(ids, now=self.clock.now())
        self.db.commit()
        return ids


def dispatch_pending_notifications(
    session_factory: Callable[[], Session],
    clock: Optional[Clock] = None,
    channel_factory: Optional[Callable[[Session], NotificationChannel]] = None,
) -> Optional[DispatchSummary]:
    """
    Run one dispatch pass in a session of its own.

    Used after a booking operation has committed; any error is logged and
    swallowed so it can never be mistaken for a failed booking operation.
    """
    db = session_factory()
    try:
        channel = (channel_factory or build_notification_channel)(db)
        return NotificationDispatcher(db, channel=channel, clock=clock).dispatch_pending()
    except Exception as exc:
        db.rollback()
        logger.warning("Notification dispatch failed: %s", exc, exc_info=True)
        return None
    finally:
        db.close()
