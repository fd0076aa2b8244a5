"""Carry committed changes between service processes over RabbitMQ.

Each service runs its own ``ChangeFeed``, so a payment confirmed by the
payments service is invisible to the cabins service unless the change is
relayed. A ``ChangeRelay`` forwards local changes to a fanout exchange and,
when consuming, republishes changes from other processes on the local feed
with ``origin`` set. Relayed events are never forwarded again.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, List, Optional

import pika
from circuitbreaker import CircuitBreakerError, circuit
from pika.exceptions import AMQPError

from .config import get_settings
from .notifications import json_default
from .realtime import ChangeEvent, ChangeFeed, Subscription, change_feed

logger = logging.getLogger(__name__)

RELAYED_TABLES = ("bookings", "seats", "transactions", "study_halls", "cabin_bookings", "cabins")


def encode_change(change: ChangeEvent, origin: str) -> bytes:
    return json.dumps(
        {
            "origin": origin,
            "table": change.table,
            "event_type": change.event_type,
            "record_id": change.record_id,
            "record": change.record,
        },
        default=json_default,
    ).encode()


def decode_change(body: bytes) -> ChangeEvent:
    """Rebuild a relayed change; dates arrive as ISO strings. Raises ``ValueError`` on malformed bodies."""

    try:
        data = json.loads(body)
        return ChangeEvent(
            table=data["table"],
            event_type=data["event_type"],
            record_id=data.get("record_id"),
            record=dict(data.get("record") or {}),
            origin=data["origin"],
        )
    except (TypeError, KeyError, json.JSONDecodeError) as exc:
        raise ValueError(f"Malformed change message: {exc}") from exc


@circuit(failure_threshold=5, recovery_timeout=60, expected_exception=AMQPError)
def _publish_change(host: str, exchange: str, body: bytes) -> None:
    connection = pika.BlockingConnection(pika.ConnectionParameters(host=host))
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=exchange, exchange_type="fanout", durable=True)
        channel.basic_publish(exchange=exchange, routing_key="", body=body)
    finally:
        connection.close()


class ChangeRelay:
    """Bridge between the local change feed and the shared change exchange."""

    def __init__(self, service_name: str, feed: Optional[ChangeFeed] = None, *, consume: bool = True) -> None:
        self.feed = feed or change_feed
        self.origin = f"{service_name}-{uuid.uuid4().hex[:8]}"
        self.consume = consume
        self._subscriptions: List[Subscription] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Any = None

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> "ChangeRelay":
        if self._subscriptions:
            return self
        logger.info("Starting change relay %s", self.origin)
        self._stop.clear()
        for table in RELAYED_TABLES:
            self._subscriptions.append(self.feed.subscribe(table, self.forward))
        if self.consume:
            self._thread = threading.Thread(target=self._consume_forever, name=f"change-relay-{self.origin}", daemon=True)
            self._thread.start()
        return self

    def stop(self) -> None:
        if not self._subscriptions:
            return
        logger.info("Stopping change relay %s", self.origin)
        for subscription in self._subscriptions:
            self.feed.unsubscribe(subscription)
        self._subscriptions.clear()
        self._stop.set()
        connection, channel = self._connection, self._channel
        if connection is not None and channel is not None:
            try:
                connection.add_callback_threadsafe(channel.stop_consuming)
            except AMQPError as exc:
                logger.warning("Change relay consumer was already closed: %s", exc)
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def forward(self, change: ChangeEvent) -> bool:
        """Publish a local change to the exchange. Never raises; returns whether it was sent."""

        if change.origin is not None:
            return False
        settings = get_settings()
        try:
            _publish_change(settings.rabbitmq_host, settings.change_exchange, encode_change(change, self.origin))
        except CircuitBreakerError:
            logger.warning("[RabbitMQ] Circuit open, dropping %s change on %s", change.event_type, change.table)
            return False
        except AMQPError as exc:
            logger.error("[RabbitMQ] Failed to relay %s change on %s: %s", change.event_type, change.table, exc)
            return False
        return True

    def receive(self, body: bytes) -> bool:
        """Republish a change from another process on the local feed; skips our own."""

        change = decode_change(body)
        if change.origin == self.origin:
            return False
        self.feed.publish(change)
        return True

    def _on_message(self, _channel: Any, _method: Any, _properties: Any, body: bytes) -> None:
        try:
            self.receive(body)
        except ValueError as exc:
            logger.warning("Dropping change message: %s", exc)

    def _consume_forever(self) -> None:
        settings = get_settings()
        while not self._stop.is_set():
            try:
                self._consume_once(settings.rabbitmq_host, settings.change_exchange)
            except AMQPError as exc:
                logger.error("[RabbitMQ] Change relay consumer failed: %s", exc)
            self._stop.wait(settings.change_relay_retry_seconds)

    def _consume_once(self, host: str, exchange: str) -> None:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=host))
        try:
            channel = connection.channel()
            channel.exchange_declare(exchange=exchange, exchange_type="fanout", durable=True)
            queue = channel.queue_declare(queue="", exclusive=True).method.queue
            channel.queue_bind(exchange=exchange, queue=queue)
            channel.basic_consume(queue=queue, on_message_callback=self._on_message, auto_ack=True)
            self._connection, self._channel = connection, channel
            if self._stop.is_set():
                return
            logger.info("Change relay %s consuming from %s", self.origin, exchange)
            channel.start_consuming()
        finally:
            self._connection, self._channel = None, None
            if connection.is_open:
                connection.close()
