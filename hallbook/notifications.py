"""Best-effort publishing of booking events to RabbitMQ."""
from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Dict

import pika
from circuitbreaker import CircuitBreakerError, circuit
from pika.exceptions import AMQPError

from .config import get_settings

logger = logging.getLogger(__name__)

CABIN_BOOKING_CREATED = "cabin_booking_created"
CABIN_BOOKING_PAID = "cabin_booking_paid"
CABIN_BOOKING_VACATED = "cabin_booking_vacated"
CABIN_BOOKINGS_EXPIRED = "cabin_bookings_expired"
SEAT_BOOKING_CREATED = "seat_booking_created"
SEAT_BOOKING_STATUS_CHANGED = "seat_booking_status_changed"
DEPOSIT_REFUND_UPDATED = "deposit_refund_updated"


def json_default(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def build_message(event: str, payload: Dict[str, Any]) -> bytes:
    return json.dumps({"event": event, **payload}, default=json_default).encode()


@circuit(failure_threshold=5, recovery_timeout=60, expected_exception=AMQPError)
def _publish(host: str, queue: str, body: bytes) -> None:
    connection = pika.BlockingConnection(pika.ConnectionParameters(host=host))
    try:
        channel = connection.channel()
        channel.queue_declare(queue=queue, durable=True)
        channel.basic_publish(
            exchange="",
            routing_key=queue,
            body=body,
            properties=pika.BasicProperties(delivery_mode=2),
        )
    finally:
        connection.close()


def publish_event(event: str, payload: Dict[str, Any]) -> bool:
    """Send ``event`` to the notifications queue. Never raises; returns whether it was sent."""

    settings = get_settings()
    if not settings.notifications_enabled:
        return False

    body = build_message(event, payload)
    try:
        _publish(settings.rabbitmq_host, settings.notifications_queue, body)
    except CircuitBreakerError:
        logger.warning("[RabbitMQ] Circuit open, dropping %s", event)
        return False
    except AMQPError as exc:
        logger.error("[RabbitMQ] Failed to publish %s: %s", event, exc)
        return False
    logger.info("[RabbitMQ] Published %s", event)
    return True
