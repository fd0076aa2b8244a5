"""In-process change feed fed by committed ORM writes.

Inserts, updates and deletes are collected at flush time and published once
the surrounding transaction commits; a rollback discards them. Subscribers
run synchronously in the committing thread.
"""
from __future__ import annotations

import itertools
import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, sessionmaker

from .database import SessionLocal

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ALL_EVENTS = "*"

_PENDING_KEY = "hallbook_pending_changes"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    record_id: Any
    record: Dict[str, Any] = field(default_factory=dict, compare=False)
    # Set on events that arrived from another process through the change relay.
    origin: Optional[str] = field(default=None, compare=False)


ChangeCallback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    table: str
    events: FrozenSet[str]
    callback: ChangeCallback = field(compare=False)

    def matches(self, change: ChangeEvent) -> bool:
        if self.table != change.table:
            return False
        return ALL_EVENTS in self.events or change.event_type in self.events


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscriptions: Dict[int, Subscription] = {}

    def subscribe(self, table: str, callback: ChangeCallback, events: Iterable[str] = (ALL_EVENTS,)) -> Subscription:
        with self._lock:
            subscription = Subscription(next(self._ids), table, frozenset(events), callback)
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> int:
        """Deliver ``change`` to every matching subscriber; returns how many were called."""

        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(change)]
        for subscription in targets:
            try:
                subscription.callback(change)
            except Exception:
                logger.exception("Change subscriber %s failed for %s %s", subscription.id, change.event_type, change.table)
        return len(targets)


def _snapshot(instance: Any) -> Dict[str, Any]:
    mapper = inspect(instance).mapper
    return {attr.key: getattr(instance, attr.key, None) for attr in mapper.column_attrs}


def _change_for(instance: Any, event_type: str) -> Optional[ChangeEvent]:
    table = getattr(instance, "__tablename__", None)
    if table is None:
        return None
    return ChangeEvent(table, event_type, getattr(instance, "id", None), _snapshot(instance))


_installed: "weakref.WeakSet[sessionmaker]" = weakref.WeakSet()


def install_change_capture(session_factory: sessionmaker, feed: ChangeFeed) -> None:
    """Publish committed writes made through ``session_factory`` sessions to ``feed``."""

    if session_factory in _installed:
        return
    _installed.add(session_factory)

    @event.listens_for(session_factory, "after_flush")
    def _collect(session: Session, _flush_context: Any) -> None:
        pending: List[ChangeEvent] = session.info.setdefault(_PENDING_KEY, [])
        buckets: Tuple[Tuple[Iterable[Any], str], ...] = (
            (session.new, INSERT),
            ((obj for obj in session.dirty if session.is_modified(obj, include_collections=False)), UPDATE),
            (session.deleted, DELETE),
        )
        for instances, event_type in buckets:
            for instance in instances:
                change = _change_for(instance, event_type)
                if change is not None:
                    pending.append(change)

    @event.listens_for(session_factory, "after_commit")
    def _publish(session: Session) -> None:
        for change in session.info.pop(_PENDING_KEY, []):
            feed.publish(change)

    @event.listens_for(session_factory, "after_rollback")
    def _discard(session: Session) -> None:
        session.info.pop(_PENDING_KEY, None)


change_feed = ChangeFeed()
install_change_capture(SessionLocal, change_feed)


class RealTimeManager:
    """Headless subscriber that calls back whenever watched tables change.

    Only the callbacks that are provided get a subscription; seat callbacks
    only hear about updates. Use as a context manager, or call ``start`` and
    ``stop`` explicitly.
    """

    def __init__(
        self,
        feed: Optional[ChangeFeed] = None,
        *,
        on_booking_change: Optional[ChangeCallback] = None,
        on_seat_change: Optional[ChangeCallback] = None,
        on_transaction_change: Optional[ChangeCallback] = None,
        on_study_hall_change: Optional[ChangeCallback] = None,
        on_cabin_booking_change: Optional[ChangeCallback] = None,
        on_cabin_change: Optional[ChangeCallback] = None,
    ) -> None:
        self.feed = feed or change_feed
        self._bindings: List[Tuple[str, Tuple[str, ...], Optional[ChangeCallback]]] = [
            ("bookings", (ALL_EVENTS,), on_booking_change),
            ("seats", (UPDATE,), on_seat_change),
            ("transactions", (ALL_EVENTS,), on_transaction_change),
            ("study_halls", (ALL_EVENTS,), on_study_hall_change),
            ("cabin_bookings", (ALL_EVENTS,), on_cabin_booking_change),
            ("cabins", (ALL_EVENTS,), on_cabin_change),
        ]
        self._subscriptions: List[Subscription] = []

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> "RealTimeManager":
        if self._subscriptions:
            return self
        logger.info("Setting up real-time subscriptions")
        for table, events, callback in self._bindings:
            if callback is not None:
                self._subscriptions.append(self.feed.subscribe(table, callback, events))
        return self

    def stop(self) -> None:
        if not self._subscriptions:
            return
        logger.info("Cleaning up real-time subscriptions")
        for subscription in self._subscriptions:
            self.feed.unsubscribe(subscription)
        self._subscriptions.clear()

    def __enter__(self) -> "RealTimeManager":
        return self.start()

    def __exit__(self, *_exc: Any) -> None:
        self.stop()
