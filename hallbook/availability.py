"""Occupancy rules and availability views for cabins and seats.

A cabin booking blocks its cabin while it is paid, not vacated and its end
date has not passed. That rule is evaluated here over fetched rows; nothing
in the database enforces it.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .models import Booking, Cabin, CabinBooking, Seat

logger = logging.getLogger(__name__)

SEAT_BLOCKING_STATUSES = ("confirmed", "active", "pending")
_DIGITS = re.compile(r"(\d+)")


class CabinStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


@dataclass
class CabinAvailability:
    status: CabinStatus
    bookings: int = 0


@dataclass
class HallCabinStatus:
    status: str
    booked_until: Optional[date] = None
    days_remaining: Optional[int] = None


@dataclass
class BookingConflict:
    booking_id: int
    start_date: date
    end_date: date
    user_id: int


@dataclass
class SeatAvailability:
    available: bool
    conflicts: List[BookingConflict] = field(default_factory=list)


@dataclass
class DateAvailability:
    date: date
    available_seats: List[int]
    occupied_seats: List[int]
    total_seats: int


def is_cabin_booking_blocking(booking: Optional[CabinBooking], today: Optional[date] = None) -> bool:
    if booking is None:
        return False
    if booking.payment_status != "paid":
        return False
    if booking.is_vacated:
        return False
    if booking.end_date is None:
        return False
    return booking.end_date >= (today or date.today())


def build_layout_cabin_mapping(layout: Mapping[str, Any], cabins: Sequence[Cabin]) -> Dict[str, int]:
    """Map layout cabin ids onto stored cabins.

    Tries an exact name match, then the first number in the layout name
    against ``cabin_number``, then falls back to position in cabin-number order.
    """

    mapping: Dict[str, int] = {}
    by_number = sorted(cabins, key=lambda cabin: cabin.cabin_number or 0)

    for index, layout_cabin in enumerate(layout.get("cabins") or []):
        name = layout_cabin.get("name")
        match = next((cabin for cabin in cabins if cabin.cabin_name == name), None)

        if match is None and name:
            digits = _DIGITS.search(name)
            if digits:
                number = int(digits.group(1))
                match = next((cabin for cabin in cabins if cabin.cabin_number == number), None)

        if match is None and index < len(by_number):
            match = by_number[index]

        if match is not None:
            mapping[str(layout_cabin["id"])] = match.id

    return mapping


def load_cabins_and_blocking_bookings(
    db: Session, private_hall_id: int, today: Optional[date] = None
) -> Tuple[List[Cabin], List[CabinBooking]]:
    today = today or date.today()
    cabins = db.query(Cabin).filter(Cabin.private_hall_id == private_hall_id).all()
    if not cabins:
        return [], []

    bookings = (
        db.query(CabinBooking)
        .filter(
            CabinBooking.cabin_id.in_([cabin.id for cabin in cabins]),
            CabinBooking.payment_status == "paid",
            CabinBooking.is_vacated.is_(False),
            CabinBooking.end_date >= today,
        )
        .all()
    )
    return cabins, bookings


def compute_availability_map(
    layout: Mapping[str, Any],
    cabins: Sequence[Cabin],
    bookings: Iterable[CabinBooking],
    mapping: Mapping[str, int],
    today: Optional[date] = None,
) -> Dict[str, CabinAvailability]:
    """Availability keyed by layout cabin id."""

    today = today or date.today()
    cabins_by_id = {cabin.id: cabin for cabin in cabins}
    bookings = list(bookings)
    availability: Dict[str, CabinAvailability] = {}

    for layout_cabin in layout.get("cabins") or []:
        layout_id = str(layout_cabin["id"])
        cabin_id = mapping.get(layout_id)
        if cabin_id is None:
            availability[layout_id] = CabinAvailability(CabinStatus.AVAILABLE, 0)
            continue

        cabin = cabins_by_id.get(cabin_id)
        if cabin is not None and cabin.status == CabinStatus.MAINTENANCE.value:
            availability[layout_id] = CabinAvailability(CabinStatus.MAINTENANCE, 0)
            continue

        active = [b for b in bookings if b.cabin_id == cabin_id and is_cabin_booking_blocking(b, today)]
        status = CabinStatus.OCCUPIED if active else CabinStatus.AVAILABLE
        availability[layout_id] = CabinAvailability(status, len(active))

    return availability


def layout_from_cabins(cabins: Sequence[Cabin]) -> Dict[str, Any]:
    """Synthesize a layout for halls created without a designer layout."""

    ordered = sorted(cabins, key=lambda cabin: cabin.cabin_number or 0)
    return {"cabins": [{"id": str(cabin.id), "name": cabin.cabin_name} for cabin in ordered]}


def compute_hall_cabin_status(
    bookings: Iterable[CabinBooking], private_hall_id: int, today: Optional[date] = None
) -> HallCabinStatus:
    """Aggregate status of a private hall and how long it stays booked."""

    today = today or date.today()
    active = [
        booking
        for booking in bookings
        if booking.private_hall_id == private_hall_id and is_cabin_booking_blocking(booking, today)
    ]
    if not active:
        return HallCabinStatus(status="available")

    booked_until = max(booking.end_date for booking in active)
    return HallCabinStatus(
        status="booked",
        booked_until=booked_until,
        days_remaining=max(0, (booked_until - today).days),
    )


def _overlapping_seat_bookings(db: Session, start_date: date, end_date: date):
    return db.query(Booking).filter(
        Booking.status.in_(SEAT_BLOCKING_STATUSES),
        Booking.start_date <= end_date,
        Booking.end_date >= start_date,
    )


def check_seat_availability(db: Session, seat_id: int, start_date: date, end_date: date) -> SeatAvailability:
    conflicts = _overlapping_seat_bookings(db, start_date, end_date).filter(Booking.seat_id == seat_id).all()
    logger.debug("Seat %s from %s to %s has %d conflicts", seat_id, start_date, end_date, len(conflicts))
    return SeatAvailability(
        available=not conflicts,
        conflicts=[
            BookingConflict(
                booking_id=booking.id,
                start_date=booking.start_date,
                end_date=booking.end_date,
                user_id=booking.user_id,
            )
            for booking in conflicts
        ],
    )


def get_seat_availability_map(db: Session, study_hall_id: int, start_date: date, end_date: date) -> Dict[int, bool]:
    seat_ids = [seat_id for (seat_id,) in db.query(Seat.id).filter(Seat.study_hall_id == study_hall_id).all()]
    if not seat_ids:
        return {}

    occupied = {
        seat_id
        for (seat_id,) in _overlapping_seat_bookings(db, start_date, end_date)
        .filter(Booking.study_hall_id == study_hall_id)
        .with_entities(Booking.seat_id)
        .all()
    }
    return {seat_id: seat_id not in occupied for seat_id in seat_ids}


def get_date_availability(db: Session, study_hall_id: int, dates: Iterable[date]) -> Dict[date, DateAvailability]:
    seat_ids = [seat_id for (seat_id,) in db.query(Seat.id).filter(Seat.study_hall_id == study_hall_id).all()]
    if not seat_ids:
        return {}

    result: Dict[date, DateAvailability] = {}
    for day in dates:
        seat_map = get_seat_availability_map(db, study_hall_id, day, day)
        result[day] = DateAvailability(
            date=day,
            available_seats=[seat_id for seat_id in seat_ids if seat_map.get(seat_id, True)],
            occupied_seats=[seat_id for seat_id in seat_ids if not seat_map.get(seat_id, True)],
            total_seats=len(seat_ids),
        )
    return result


def find_cabin_conflicts(
    db: Session,
    cabin_id: int,
    start_date: date,
    end_date: date,
    today: Optional[date] = None,
    exclude_booking_id: Optional[int] = None,
) -> List[CabinBooking]:
    """Blocking bookings on ``cabin_id`` whose dates overlap the inclusive range."""

    query = db.query(CabinBooking).filter(
        CabinBooking.cabin_id == cabin_id,
        CabinBooking.payment_status == "paid",
        CabinBooking.is_vacated.is_(False),
        CabinBooking.end_date >= (today or date.today()),
        CabinBooking.start_date <= end_date,
        CabinBooking.end_date >= start_date,
    )
    if exclude_booking_id is not None:
        query = query.filter(CabinBooking.id != exclude_booking_id)
    return query.all()
