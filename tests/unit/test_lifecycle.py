"""Unit tests for booking lifecycle transitions and the background manager."""
import asyncio
from datetime import date, datetime, timedelta

import pytest

from hallbook.database import SessionLocal
from hallbook.errors import CabinUnavailableError, PaymentError, ValidationError
from hallbook.lifecycle import (
    AUTO_EXPIRE_REASON,
    BookingLifecycleManager,
    auto_expire_cabin_bookings,
    cancel_stale_pending_bookings,
    confirm_cabin_booking_payment,
    get_cabin_availability_status,
    open_deposit_refund,
    release_expired_bookings,
    update_deposit_refund,
    update_seat_booking_status,
    vacate_cabin_booking,
)
from hallbook.models import Booking, Cabin, CabinBooking, DepositRefund, PrivateHall, Seat, StudyHall
from hallbook.realtime import ChangeEvent, ChangeFeed, UPDATE

TODAY = date(2026, 5, 15)


@pytest.fixture()
def cabin(db_session, merchant) -> Cabin:
    hall = PrivateHall(merchant_id=merchant.id, name="Hall", location="Town", monthly_price=2000, cabin_count=1)
    hall.cabins = [Cabin(cabin_number=1, cabin_name="Cabin 1")]
    db_session.add(hall)
    db_session.commit()
    return hall.cabins[0]


def add_booking(db_session, cabin: Cabin, **fields) -> CabinBooking:
    values = {
        "booking_number": "CB00000001",
        "cabin_id": cabin.id,
        "private_hall_id": cabin.private_hall_id,
        "start_date": TODAY,
        "end_date": TODAY + timedelta(days=30),
        "total_amount": 2000,
    }
    values.update(fields)
    booking = CabinBooking(**values)
    db_session.add(booking)
    db_session.commit()
    return booking


class TestPaymentConfirmation:
    def test_confirm_marks_paid_and_occupies_cabin(self, db_session, cabin):
        booking = add_booking(db_session, cabin)

        confirm_cabin_booking_payment(db_session, booking, 2000, TODAY)

        assert booking.payment_status == "paid"
        assert booking.status == "active"
        assert cabin.status == "occupied"

    def test_amount_mismatch(self, db_session, cabin):
        booking = add_booking(db_session, cabin)

        with pytest.raises(PaymentError):
            confirm_cabin_booking_payment(db_session, booking, 1999, TODAY)
        assert booking.payment_status == "pending"

    def test_already_paid(self, db_session, cabin):
        booking = add_booking(db_session, cabin, payment_status="paid")

        with pytest.raises(PaymentError, match="already been paid"):
            confirm_cabin_booking_payment(db_session, booking, 2000, TODAY)

    def test_cancelled(self, db_session, cabin):
        booking = add_booking(db_session, cabin, status="cancelled")

        with pytest.raises(PaymentError):
            confirm_cabin_booking_payment(db_session, booking, 2000, TODAY)

    def test_lost_race_to_another_paid_booking(self, db_session, cabin):
        add_booking(db_session, cabin, payment_status="paid", status="active")
        late = add_booking(db_session, cabin, booking_number="CB00000002", start_date=TODAY + timedelta(days=10))

        with pytest.raises(CabinUnavailableError):
            confirm_cabin_booking_payment(db_session, late, 2000, TODAY)

    def test_cabin_under_maintenance(self, db_session, cabin):
        cabin.status = "maintenance"
        booking = add_booking(db_session, cabin)

        with pytest.raises(CabinUnavailableError):
            confirm_cabin_booking_payment(db_session, booking, 2000, TODAY)


class TestVacate:
    def test_vacate_frees_cabin(self, db_session, cabin, admin):
        cabin.status = "occupied"
        booking = add_booking(db_session, cabin, payment_status="paid", status="active")

        result = vacate_cabin_booking(db_session, booking, admin.id, "Left early", TODAY)

        assert result["success"] is True
        assert result["cabin_status"] == "available"
        assert booking.is_vacated is True
        assert booking.vacated_by == admin.id
        assert booking.vacate_reason == "Left early"
        assert booking.status == "completed"

    def test_vacate_twice(self, db_session, cabin, admin):
        booking = add_booking(db_session, cabin, payment_status="paid", is_vacated=True)

        with pytest.raises(ValidationError, match="already been vacated"):
            vacate_cabin_booking(db_session, booking, admin.id, today=TODAY)

    def test_vacate_unpaid(self, db_session, cabin, admin):
        booking = add_booking(db_session, cabin)

        with pytest.raises(ValidationError, match="Only paid bookings"):
            vacate_cabin_booking(db_session, booking, admin.id, today=TODAY)

    def test_maintenance_cabin_stays_in_maintenance(self, db_session, cabin, admin):
        cabin.status = "maintenance"
        booking = add_booking(db_session, cabin, payment_status="paid", status="active")

        result = vacate_cabin_booking(db_session, booking, admin.id, today=TODAY)

        assert result["cabin_status"] == "maintenance"


class TestAutoExpire:
    def test_expires_only_past_paid_bookings(self, db_session, cabin):
        cabin.status = "occupied"
        expired = add_booking(
            db_session, cabin, payment_status="paid", status="active", end_date=TODAY - timedelta(days=1)
        )
        current = add_booking(db_session, cabin, booking_number="CB00000002", payment_status="paid", status="active")
        unpaid = add_booking(db_session, cabin, booking_number="CB00000003", end_date=TODAY - timedelta(days=1))

        assert auto_expire_cabin_bookings(db_session, TODAY) == 1

        db_session.refresh(expired)
        assert expired.is_vacated is True
        assert expired.vacate_reason == AUTO_EXPIRE_REASON
        assert expired.status == "completed"
        assert current.is_vacated is False
        assert unpaid.is_vacated is False
        # Another paid booking still holds the cabin.
        assert cabin.status == "occupied"

    def test_nothing_to_expire(self, db_session):
        assert auto_expire_cabin_bookings(db_session, TODAY) == 0


class TestCabinAvailabilityStatus:
    def test_missing_cabin(self, db_session):
        assert get_cabin_availability_status(db_session, 999, TODAY) is None

    def test_available(self, db_session, cabin):
        status = get_cabin_availability_status(db_session, cabin.id, TODAY)
        assert status.is_available is True
        assert status.status_reason == "available"

    def test_booked(self, db_session, cabin):
        booking = add_booking(db_session, cabin, payment_status="paid", end_date=TODAY + timedelta(days=7))

        status = get_cabin_availability_status(db_session, cabin.id, TODAY)

        assert status.is_available is False
        assert status.booking_id == booking.id
        assert status.booked_until == TODAY + timedelta(days=7)
        assert status.days_remaining == 7

    def test_maintenance(self, db_session, cabin):
        cabin.status = "maintenance"
        db_session.commit()

        status = get_cabin_availability_status(db_session, cabin.id, TODAY)
        assert status.status_reason == "maintenance"


@pytest.fixture()
def seat(db_session, merchant) -> Seat:
    hall = StudyHall(
        merchant_id=merchant.id, name="Room", location="Town", rows=1, seats_per_row=1, total_seats=1, monthly_price=900
    )
    hall.seats = [Seat(seat_id="A1", row_name="A", seat_number=1, is_available=False)]
    db_session.add(hall)
    db_session.commit()
    return hall.seats[0]


def add_seat_booking(db_session, seat, user, end_date, status="active") -> Booking:
    booking = Booking(
        user_id=user.id,
        study_hall_id=seat.study_hall_id,
        seat_id=seat.id,
        start_date=end_date - timedelta(days=10),
        end_date=end_date,
        status=status,
    )
    db_session.add(booking)
    db_session.commit()
    return booking


class TestReleaseExpired:
    def test_completes_and_frees_seat(self, db_session, seat, student):
        booking = add_seat_booking(db_session, seat, student, TODAY - timedelta(days=1))

        assert release_expired_bookings(db_session, TODAY) == 1

        db_session.refresh(booking)
        db_session.refresh(seat)
        assert booking.status == "completed"
        assert seat.is_available is True

    def test_pending_and_current_bookings_untouched(self, db_session, seat, student):
        add_seat_booking(db_session, seat, student, TODAY - timedelta(days=1), status="pending")
        add_seat_booking(db_session, seat, student, TODAY, status="confirmed")

        assert release_expired_bookings(db_session, TODAY) == 0


class TestBookingLifecycleManager:
    def test_run_checks_reports_both_kinds(self, db_session, cabin, seat, student):
        add_booking(db_session, cabin, payment_status="paid", end_date=TODAY - timedelta(days=2))
        add_seat_booking(db_session, seat, student, TODAY - timedelta(days=1))
        manager = BookingLifecycleManager(SessionLocal, ChangeFeed(), clock=lambda: TODAY)

        report = manager.run_checks()

        assert report.released_seat_bookings == 1
        assert report.expired_cabin_bookings == 1
        assert manager.runs == 1

    def test_failures_are_swallowed(self):
        def broken_factory():
            raise RuntimeError("database unavailable")

        manager = BookingLifecycleManager(broken_factory, ChangeFeed(), clock=lambda: TODAY)

        assert asyncio.run(manager.run_checks_async()) is None
        assert manager.runs == 0

    def test_start_runs_immediately_and_stop_unsubscribes(self):
        feed = ChangeFeed()
        manager = BookingLifecycleManager(SessionLocal, feed, interval=60, clock=lambda: TODAY)

        async def scenario():
            await manager.start()
            assert manager.running
            assert feed.subscriber_count == 2
            await asyncio.sleep(0.2)
            await manager.stop()

        asyncio.run(scenario())

        assert manager.runs == 1
        assert not manager.running
        assert feed.subscriber_count == 0

    def test_changes_trigger_a_single_coalesced_run(self):
        feed = ChangeFeed()
        manager = BookingLifecycleManager(SessionLocal, feed, interval=60, change_delay=0.05, clock=lambda: TODAY)

        async def scenario():
            await manager.start()
            await asyncio.sleep(0.2)
            for record_id in range(3):
                feed.publish(ChangeEvent("cabin_bookings", UPDATE, record_id))
            await asyncio.sleep(0.3)
            await manager.stop()

        asyncio.run(scenario())

        assert manager.runs == 2

    def test_changes_ignored_when_stopped(self):
        feed = ChangeFeed()
        manager = BookingLifecycleManager(SessionLocal, feed, change_delay=0.01, clock=lambda: TODAY)

        feed.publish(ChangeEvent("bookings", UPDATE, 1))

        assert manager.runs == 0

    def test_change_queued_before_stop_does_not_run(self):
        feed = ChangeFeed()
        manager = BookingLifecycleManager(SessionLocal, feed, interval=60, change_delay=0.05, clock=lambda: TODAY)

        async def scenario():
            await manager.start()
            await asyncio.sleep(0.2)
            feed.publish(ChangeEvent("cabin_bookings", UPDATE, 1))
            await manager.stop()
            await asyncio.sleep(0.3)

        asyncio.run(scenario())

        assert manager.runs == 1


class TestSeatBookingStatus:
    def test_pending_to_confirmed_to_completed(self, db_session, seat, student):
        booking = add_seat_booking(db_session, seat, student, TODAY, status="pending")

        update_seat_booking_status(db_session, booking, "confirmed")
        assert seat.is_available is False

        update_seat_booking_status(db_session, booking, "completed")
        assert booking.status == "completed"
        assert seat.is_available is True

    def test_final_statuses_cannot_move(self, db_session, seat, student):
        booking = add_seat_booking(db_session, seat, student, TODAY, status="cancelled")

        with pytest.raises(ValidationError, match="Cannot move a cancelled booking to active"):
            update_seat_booking_status(db_session, booking, "active")

    def test_seat_stays_taken_while_another_booking_holds_it(self, db_session, seat, student):
        add_seat_booking(db_session, seat, student, TODAY + timedelta(days=20), status="active")
        booking = add_seat_booking(db_session, seat, student, TODAY, status="confirmed")

        update_seat_booking_status(db_session, booking, "cancelled")

        assert booking.status == "cancelled"
        assert seat.is_available is False


class TestStalePendingBookings:
    def test_only_old_unpaid_pending_bookings_are_cancelled(self, db_session, seat, student):
        now = datetime(2026, 5, 15, 12, 0)
        stale = add_seat_booking(db_session, seat, student, TODAY, status="pending")
        fresh = add_seat_booking(db_session, seat, student, TODAY, status="pending")
        paid = add_seat_booking(db_session, seat, student, TODAY, status="pending")
        stale.created_at = now - timedelta(minutes=45)
        fresh.created_at = now - timedelta(minutes=5)
        paid.created_at = now - timedelta(minutes=45)
        paid.payment_status = "paid"
        db_session.commit()

        assert cancel_stale_pending_bookings(db_session, 30, now) == 1

        assert stale.status == "cancelled"
        assert fresh.status == "pending"
        assert paid.status == "pending"

    def test_nothing_stale(self, db_session):
        assert cancel_stale_pending_bookings(db_session, 30) == 0


class TestDepositRefunds:
    def test_vacate_opens_refund_for_deposit(self, db_session, cabin, admin):
        booking = add_booking(db_session, cabin, payment_status="paid", status="active", deposit_amount=500)

        result = vacate_cabin_booking(db_session, booking, admin.id, "Left early", TODAY)

        refund = db_session.get(DepositRefund, result["deposit_refund_id"])
        assert refund.refund_amount == 500
        assert refund.refund_status == "pending"
        assert refund.refund_reason == "Left early"
        assert refund.merchant_id == cabin.private_hall.merchant_id

    def test_no_refund_without_deposit(self, db_session, cabin, admin):
        booking = add_booking(db_session, cabin, payment_status="paid", status="active")

        result = vacate_cabin_booking(db_session, booking, admin.id, today=TODAY)

        assert result["deposit_refund_id"] is None
        assert db_session.query(DepositRefund).count() == 0

    def test_auto_expire_opens_refunds(self, db_session, cabin):
        add_booking(
            db_session,
            cabin,
            payment_status="paid",
            status="active",
            deposit_amount=300,
            end_date=TODAY - timedelta(days=1),
        )

        assert auto_expire_cabin_bookings(db_session, TODAY) == 1

        refund = db_session.query(DepositRefund).one()
        assert refund.refund_amount == 300
        assert refund.refund_reason == AUTO_EXPIRE_REASON

    def test_open_refund_is_reused(self, db_session, cabin):
        booking = add_booking(db_session, cabin, payment_status="paid", deposit_amount=500)
        first = open_deposit_refund(db_session, booking)
        db_session.commit()

        assert open_deposit_refund(db_session, booking) is first

    def test_refund_walks_to_completed(self, db_session, cabin, merchant):
        booking = add_booking(db_session, cabin, payment_status="paid", deposit_amount=500)
        refund = open_deposit_refund(db_session, booking)
        db_session.commit()

        update_deposit_refund(db_session, refund, "processing", merchant.id)
        with pytest.raises(ValidationError, match="payment reference is required"):
            update_deposit_refund(db_session, refund, "completed", merchant.id)
        update_deposit_refund(db_session, refund, "completed", merchant.id, payment_reference="UTR42")

        assert refund.refund_status == "completed"
        assert refund.processed_by == merchant.id
        assert booking.deposit_refunded is True
        assert open_deposit_refund(db_session, booking) is None

    def test_rejected_refund_is_final(self, db_session, cabin, merchant):
        booking = add_booking(db_session, cabin, payment_status="paid", deposit_amount=500)
        refund = open_deposit_refund(db_session, booking)
        db_session.commit()

        update_deposit_refund(db_session, refund, "rejected", merchant.id, notes="Damaged desk")

        with pytest.raises(ValidationError, match="Cannot move a rejected refund to processing"):
            update_deposit_refund(db_session, refund, "processing", merchant.id)
        assert refund.notes == "Damaged desk"
        assert booking.deposit_refunded is False
