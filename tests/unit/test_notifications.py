"""Unit tests for RabbitMQ booking notifications."""
import json
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from circuitbreaker import CircuitBreakerError
from pika.exceptions import AMQPConnectionError

from hallbook import notifications
from hallbook.config import get_settings, reset_settings_cache


@pytest.fixture()
def enabled(monkeypatch):
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
    reset_settings_cache()
    yield get_settings()
    monkeypatch.undo()
    reset_settings_cache()


class TestBuildMessage:
    def test_dates_are_iso_formatted(self):
        body = notifications.build_message(
            notifications.CABIN_BOOKING_CREATED, {"booking_id": 3, "start_date": date(2026, 6, 1)}
        )

        assert json.loads(body) == {"event": "cabin_booking_created", "booking_id": 3, "start_date": "2026-06-01"}


class TestPublishEvent:
    def test_disabled_by_default(self):
        with patch.object(notifications, "_publish") as publish:
            assert notifications.publish_event(notifications.CABIN_BOOKING_PAID, {"booking_id": 1}) is False
        publish.assert_not_called()

    def test_publishes_when_enabled(self, enabled):
        with patch.object(notifications, "_publish") as publish:
            assert notifications.publish_event(notifications.CABIN_BOOKING_PAID, {"booking_id": 1}) is True

        host, queue, body = publish.call_args.args
        assert host == enabled.rabbitmq_host
        assert queue == enabled.notifications_queue
        assert json.loads(body)["event"] == "cabin_booking_paid"

    def test_broker_failure_is_swallowed(self, enabled):
        with patch.object(notifications, "_publish", side_effect=AMQPConnectionError("down")):
            assert notifications.publish_event(notifications.CABIN_BOOKING_VACATED, {"booking_id": 1}) is False

    def test_open_circuit_is_swallowed(self, enabled):
        with patch.object(notifications, "_publish", side_effect=CircuitBreakerError(MagicMock())):
            assert notifications.publish_event(notifications.SEAT_BOOKING_CREATED, {"booking_id": 1}) is False

    def test_publish_declares_durable_queue(self):
        connection = MagicMock()
        channel = connection.channel.return_value
        with patch.object(notifications.pika, "BlockingConnection", return_value=connection):
            notifications._publish("broker", "notifications", b"{}")

        channel.queue_declare.assert_called_once_with(queue="notifications", durable=True)
        kwargs = channel.basic_publish.call_args.kwargs
        assert kwargs["routing_key"] == "notifications"
        assert kwargs["properties"].delivery_mode == 2
        connection.close.assert_called_once()
