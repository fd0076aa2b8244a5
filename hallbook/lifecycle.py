"""Booking lifecycle transitions and the background manager that applies them.

Cabin bookings move ``pending`` -> ``active`` once paid, and from ``active``
to ``completed`` either when vacated by staff or when their end date has
passed. Seat bookings past their end date are completed and their seats
released; unpaid pending seat bookings are cancelled after a timeout. A
finished cabin booking with a deposit opens a deposit refund, which staff move
through ``pending`` -> ``processing`` -> ``completed`` or ``rejected``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from . import notifications
from .availability import CabinStatus, find_cabin_conflicts, is_cabin_booking_blocking
from .database import SessionLocal
from .errors import CabinUnavailableError, PaymentError, ValidationError
from .models import Booking, Cabin, CabinBooking, DepositRefund, Seat
from .realtime import ChangeEvent, ChangeFeed, RealTimeManager

logger = logging.getLogger(__name__)

AUTO_EXPIRE_REASON = "Auto-expired"
STALE_PENDING_REASON = "Payment not completed in time"

# Allowed moves for a deposit refund; completed and rejected are final.
REFUND_TRANSITIONS = {
    "pending": ("processing", "rejected"),
    "processing": ("completed", "rejected"),
}
SEAT_BOOKING_TRANSITIONS = {
    "pending": ("confirmed", "active", "cancelled"),
    "confirmed": ("active", "completed", "cancelled"),
    "active": ("completed", "cancelled"),
}


@dataclass
class CabinAvailabilityStatus:
    is_available: bool
    status_reason: str
    booked_until: Optional[date]
    booking_id: Optional[int]
    days_remaining: int


@dataclass
class LifecycleReport:
    released_seat_bookings: int
    expired_cabin_bookings: int
    cancelled_pending_bookings: int = 0


def _free_cabin_if_idle(db: Session, cabin: Cabin, today: date) -> None:
    if cabin.status == CabinStatus.MAINTENANCE.value:
        return
    still_blocked = any(is_cabin_booking_blocking(b, today) for b in cabin.bookings)
    cabin.status = CabinStatus.OCCUPIED.value if still_blocked else CabinStatus.AVAILABLE.value


def open_deposit_refund(db: Session, booking: CabinBooking, reason: Optional[str] = None) -> Optional[DepositRefund]:
    """Queue the deposit of a finished booking for the merchant to pay back; adds without committing."""

    if booking.deposit_amount <= 0 or booking.deposit_refunded:
        return None
    existing = db.query(DepositRefund).filter(DepositRefund.cabin_booking_id == booking.id).one_or_none()
    if existing is not None:
        return existing
    refund = DepositRefund(
        cabin_booking_id=booking.id,
        user_id=booking.user_id,
        merchant_id=booking.private_hall.merchant_id,
        refund_amount=booking.deposit_amount,
        refund_reason=reason,
    )
    db.add(refund)
    return refund


def update_deposit_refund(
    db: Session,
    refund: DepositRefund,
    new_status: str,
    processed_by: int,
    payment_reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> DepositRefund:
    if new_status not in REFUND_TRANSITIONS.get(refund.refund_status, ()):
        raise ValidationError("refund_status", f"Cannot move a {refund.refund_status} refund to {new_status}")
    payment_reference = payment_reference or refund.payment_reference
    if new_status == "completed" and not payment_reference:
        raise ValidationError("payment_reference", "A payment reference is required to complete a refund")

    refund.refund_status = new_status
    refund.processed_at = datetime.utcnow()
    refund.processed_by = processed_by
    refund.payment_reference = payment_reference
    if notes:
        refund.notes = notes
    if new_status == "completed":
        refund.cabin_booking.deposit_refunded = True
    db.commit()
    db.refresh(refund)

    logger.info("Deposit refund %s moved to %s by user %s", refund.id, new_status, processed_by)
    notifications.publish_event(
        notifications.DEPOSIT_REFUND_UPDATED,
        {
            "refund_id": refund.id,
            "cabin_booking_id": refund.cabin_booking_id,
            "refund_status": refund.refund_status,
            "refund_amount": refund.refund_amount,
        },
    )
    return refund


def confirm_cabin_booking_payment(
    db: Session, booking: CabinBooking, amount: float, today: Optional[date] = None
) -> CabinBooking:
    """Move a pending booking to paid/active; the cabin must still be free for its dates."""

    today = today or date.today()
    if booking.payment_status == "paid":
        raise PaymentError("Booking has already been paid")
    if booking.status == "cancelled":
        raise PaymentError("Booking was cancelled")
    if abs(amount - booking.total_amount) > 0.01:
        raise PaymentError(f"Payment amount {amount} does not match booking total {booking.total_amount}")

    cabin = booking.cabin
    if cabin.status == CabinStatus.MAINTENANCE.value:
        raise CabinUnavailableError(cabin.cabin_name)
    if find_cabin_conflicts(db, cabin.id, booking.start_date, booking.end_date, today, exclude_booking_id=booking.id):
        raise CabinUnavailableError(cabin.cabin_name)

    booking.payment_status = "paid"
    booking.status = "active"
    _free_cabin_if_idle(db, cabin, today)
    return booking


def vacate_cabin_booking(
    db: Session,
    booking: CabinBooking,
    vacated_by_user_id: int,
    reason: Optional[str] = None,
    today: Optional[date] = None,
) -> dict:
    today = today or date.today()
    if booking.is_vacated:
        raise ValidationError("booking", "Booking has already been vacated")
    if booking.payment_status != "paid":
        raise ValidationError("booking", "Only paid bookings can be vacated")

    booking.is_vacated = True
    booking.vacated_at = datetime.utcnow()
    booking.vacated_by = vacated_by_user_id
    booking.vacate_reason = reason
    booking.status = "completed"
    _free_cabin_if_idle(db, booking.cabin, today)
    refund = open_deposit_refund(db, booking, reason)
    db.commit()

    logger.info("Cabin booking %s vacated by user %s", booking.id, vacated_by_user_id)
    notifications.publish_event(
        notifications.CABIN_BOOKING_VACATED,
        {"booking_id": booking.id, "cabin_id": booking.cabin_id, "private_hall_id": booking.private_hall_id},
    )
    return {
        "success": True,
        "booking_id": booking.id,
        "cabin_id": booking.cabin_id,
        "cabin_status": booking.cabin.status,
        "deposit_refund_id": refund.id if refund else None,
        "message": "Cabin booking vacated successfully",
    }


def auto_expire_cabin_bookings(db: Session, today: Optional[date] = None) -> int:
    today = today or date.today()
    expired = (
        db.query(CabinBooking)
        .filter(
            CabinBooking.payment_status == "paid",
            CabinBooking.is_vacated.is_(False),
            CabinBooking.end_date < today,
        )
        .all()
    )
    if not expired:
        return 0

    now = datetime.utcnow()
    for booking in expired:
        booking.is_vacated = True
        booking.vacated_at = now
        booking.vacate_reason = AUTO_EXPIRE_REASON
        booking.status = "completed"
        open_deposit_refund(db, booking, AUTO_EXPIRE_REASON)
    for cabin in {booking.cabin for booking in expired}:
        _free_cabin_if_idle(db, cabin, today)
    db.commit()

    logger.info("Auto-expired %d cabin bookings", len(expired))
    notifications.publish_event(
        notifications.CABIN_BOOKINGS_EXPIRED,
        {"booking_ids": [booking.id for booking in expired]},
    )
    return len(expired)


def get_cabin_availability_status(
    db: Session, cabin_id: int, today: Optional[date] = None
) -> Optional[CabinAvailabilityStatus]:
    today = today or date.today()
    cabin = db.get(Cabin, cabin_id)
    if cabin is None:
        return None
    if cabin.status == CabinStatus.MAINTENANCE.value:
        return CabinAvailabilityStatus(False, "maintenance", None, None, 0)

    blocking = [b for b in cabin.bookings if is_cabin_booking_blocking(b, today)]
    if not blocking:
        return CabinAvailabilityStatus(True, "available", None, None, 0)

    latest = max(blocking, key=lambda booking: booking.end_date)
    return CabinAvailabilityStatus(
        is_available=False,
        status_reason="booked",
        booked_until=latest.end_date,
        booking_id=latest.id,
        days_remaining=max(0, (latest.end_date - today).days),
    )


def release_expired_bookings(db: Session, today: Optional[date] = None) -> int:
    today = today or date.today()
    expired = (
        db.query(Booking)
        .filter(Booking.status.in_(("active", "confirmed")), Booking.end_date < today)
        .all()
    )
    if not expired:
        logger.debug("No expired bookings found")
        return 0

    for booking in expired:
        booking.status = "completed"
    seat_ids = {booking.seat_id for booking in expired}
    db.query(Seat).filter(Seat.id.in_(seat_ids)).update({Seat.is_available: True}, synchronize_session=False)
    db.commit()

    logger.info("Released %d expired bookings", len(expired))
    return len(expired)


def update_seat_booking_status(db: Session, booking: Booking, new_status: str) -> Booking:
    if new_status not in SEAT_BOOKING_TRANSITIONS.get(booking.status, ()):
        raise ValidationError("status", f"Cannot move a {booking.status} booking to {new_status}")
    previous = booking.status
    booking.status = new_status
    if new_status in ("completed", "cancelled"):
        still_held = (
            db.query(Booking.id)
            .filter(
                Booking.seat_id == booking.seat_id,
                Booking.id != booking.id,
                Booking.status.in_(("confirmed", "active")),
            )
            .first()
        )
        if still_held is None:
            booking.seat.is_available = True
    db.commit()
    db.refresh(booking)

    logger.info("Seat booking %s moved from %s to %s", booking.id, previous, new_status)
    notifications.publish_event(
        notifications.SEAT_BOOKING_STATUS_CHANGED,
        {"booking_id": booking.id, "seat_id": booking.seat_id, "status": new_status},
    )
    return booking


def cancel_stale_pending_bookings(db: Session, timeout_minutes: int, now: Optional[datetime] = None) -> int:
    """Cancel unpaid pending seat bookings older than ``timeout_minutes`` so their seats free up."""

    cutoff = (now or datetime.utcnow()) - timedelta(minutes=timeout_minutes)
    stale = (
        db.query(Booking)
        .filter(
            Booking.status == "pending",
            Booking.payment_status != "paid",
            Booking.created_at < cutoff,
        )
        .all()
    )
    if not stale:
        return 0

    for booking in stale:
        booking.status = "cancelled"
    db.commit()

    logger.info("Cancelled %d stale pending seat bookings", len(stale))
    return len(stale)


class BookingLifecycleManager:
    """Runs lifecycle checks on a timer and shortly after booking changes.

    Failures are logged and swallowed so the next tick can try again.
    Change-triggered runs that arrive while one is already scheduled are
    folded into it.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        feed: Optional[ChangeFeed] = None,
        interval: float = 300.0,
        change_delay: float = 1.0,
        clock: Callable[[], date] = date.today,
        pending_timeout_minutes: int = 30,
    ) -> None:
        self.session_factory = session_factory
        self.interval = interval
        self.change_delay = change_delay
        self.pending_timeout_minutes = pending_timeout_minutes
        self.clock = clock
        self.runs = 0
        self._realtime = RealTimeManager(
            feed,
            on_booking_change=self._on_change,
            on_cabin_booking_change=self._on_change,
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._change_tasks: Set[asyncio.Future] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_checks(self) -> LifecycleReport:
        today = self.clock()
        with self.session_factory() as db:
            released = release_expired_bookings(db, today)
            expired = auto_expire_cabin_bookings(db, today)
            cancelled = cancel_stale_pending_bookings(db, self.pending_timeout_minutes)
        self.runs += 1
        if released or expired or cancelled:
            logger.info(
                "Lifecycle run: %d seat bookings completed, %d cabin bookings expired, %d pending cancelled",
                released,
                expired,
                cancelled,
            )
        return LifecycleReport(
            released_seat_bookings=released,
            expired_cabin_bookings=expired,
            cancelled_pending_bookings=cancelled,
        )

    async def run_checks_async(self) -> Optional[LifecycleReport]:
        try:
            return await asyncio.to_thread(self.run_checks)
        except Exception:
            logger.exception("Error in lifecycle checks")
            return None

    async def start(self) -> None:
        if self.running:
            logger.warning("Booking lifecycle manager is already running")
            return
        self._loop = asyncio.get_running_loop()
        self._realtime.start()
        self._task = asyncio.create_task(self._run_forever())
        logger.info("Booking lifecycle manager started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._realtime.stop()
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        tasks = [task for task in (self._task, *self._change_tasks) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._change_tasks.clear()
        logger.info("Booking lifecycle manager stopped")

    async def _run_forever(self) -> None:
        while True:
            await self.run_checks_async()
            await asyncio.sleep(self.interval)

    def _on_change(self, change: ChangeEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or not self._realtime.active:
            return
        logger.debug("Booking change detected: %s %s #%s", change.event_type, change.table, change.record_id)
        loop.call_soon_threadsafe(self._schedule_change_check)

    def _schedule_change_check(self) -> None:
        if self._pending is not None or self._loop is None or not self._realtime.active:
            return
        self._pending = self._loop.call_later(self.change_delay, self._fire_change_check)

    def _fire_change_check(self) -> None:
        self._pending = None
        if not self._realtime.active:
            return
        task = asyncio.ensure_future(self.run_checks_async())
        self._change_tasks.add(task)
        task.add_done_callback(self._change_tasks.discard)
