"""
Metrics recorded by @measure_operation and the notification dispatcher.
"""

from unittest.mock import MagicMock, Mock

import pytest

from bookingcore.core.exceptions import NotificationChannelTemporaryError
from bookingcore.monitoring.prometheus_metrics import REGISTRY, service_operations_total
from bookingcore.repositories.event_outbox_repository import EventOutboxRepository
from bookingcore.services.base import BaseService
from bookingcore.services.notification_channel import DatabaseNotificationChannel
from bookingcore.services.notification_dispatcher import NotificationDispatcher
from tests.factories.booking_builders import request_booking


def sample_value(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class MeteredService(BaseService):
    @BaseService.measure_operation("successful_operation")
    def successful_operation(self):
        return "success"

    @BaseService.measure_operation("failing_operation")
    def failing_operation(self):
        raise ValueError("Test error")


def test_measure_operation_counts_success():
    service = MeteredService(Mock())

    assert service.successful_operation() == "success"

    samples = list(service_operations_total.collect())[0].samples
    matching = [
        s
        for s in samples
        if s.labels.get("service") == "MeteredService"
        and s.labels.get("operation") == "successful_operation"
        and s.labels.get("status") == "success"
    ]
    assert matching and matching[0].value >= 1
    assert (
        sample_value(
            "bookingcore_service_operation_duration_seconds_count",
            service="MeteredService",
            operation="successful_operation",
        )
        >= 1
    )


def test_measure_operation_counts_errors_by_type():
    service = MeteredService(Mock())
    labels = dict(service="MeteredService", operation="failing_operation")
    before = sample_value("bookingcore_errors_total", error_type="ValueError", **labels)

    with pytest.raises(ValueError):
        service.failing_operation()

    assert sample_value("bookingcore_errors_total", error_type="ValueError", **labels) == before + 1
    assert sample_value("bookingcore_service_operations_total", status="error", **labels) >= 1


def test_booking_service_operations_are_metered(booking_service):
    labels = dict(service="BookingService", operation="create_booking", status="success")
    before = sample_value("bookingcore_service_operations_total", **labels)

    request_booking(booking_service)

    assert sample_value("bookingcore_service_operations_total", **labels) == before + 1


def _enqueue(db, clock, event_type):
    EventOutboxRepository(db).enqueue(
        event_type=event_type,
        aggregate_id="01J00000000000000000000000",
        recipient_id="c1",
        payload={"title": "Booking Confirmed", "body": "hello", "booking_id": "01J00000000000000000000000"},
        idempotency_key=f"metrics:{event_type}",
        next_attempt_at=clock.now(),
    )
    db.commit()


def test_dispatcher_counts_attempts_and_outcomes(db, clock):
    event_type = "booking.metrics_sent"
    _enqueue(db, clock, event_type)

    NotificationDispatcher(db, channel=DatabaseNotificationChannel(db), clock=clock).dispatch_pending()

    assert sample_value("bookingcore_notifications_outbox_attempt_total", event_type=event_type) == 1
    assert sample_value("bookingcore_notifications_outbox_total", status="sent", event_type=event_type) == 1
    assert sample_value("bookingcore_notifications_dispatch_seconds_count", event_type=event_type) == 1


def test_dispatcher_counts_retries(db, clock):
    event_type = "booking.metrics_retry"
    _enqueue(db, clock, event_type)
    channel = MagicMock()
    channel.send.side_effect = NotificationChannelTemporaryError("inbox down")

    NotificationDispatcher(db, channel=channel, clock=clock).dispatch_pending()

    assert sample_value("bookingcore_notifications_outbox_total", status="retry", event_type=event_type) == 1
    assert sample_value("bookingcore_notifications_outbox_total", status="sent", event_type=event_type) == 0


def test_metrics_endpoint_exposes_recorded_operations(client):
    MeteredService(Mock()).successful_operation()

    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "bookingcore_service_operations_total" in r.text
    assert 'operation="successful_operation"' in r.text
