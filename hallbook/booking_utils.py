"""Pricing, date validation and formatting helpers for seat and cabin bookings."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Optional

from dateutil.relativedelta import relativedelta

DAYS_PER_BILLING_MONTH = 30
MAX_BOOKING_DAYS = 365
SEAT_PRICE_MARKDOWN = 100
SEAT_GATEWAY_FEE_RATE = 0.02
AMOUNT_TOLERANCE = 0.01


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass
class BookingCalculation:
    days: int
    months: int
    total_amount: float
    monthly_amount: float
    deposit_amount: float
    booking_amount: float
    start_date: date
    end_date: date


@dataclass
class SeatBookingQuote:
    amount: int
    base_amount: float
    fee_amount: int
    days: int
    base_monthly: float
    method: str = "monthly"


def calculate_cabin_booking(
    start_date: date,
    end_date: date,
    cabin_monthly_price: Optional[float],
    hall_monthly_price: float,
    deposit_amount: float = 0,
) -> BookingCalculation:
    """Price a cabin stay; both ends are inclusive and every started 30-day block is charged."""

    days = (end_date - start_date).days + 1
    months = math.ceil(days / DAYS_PER_BILLING_MONTH)
    monthly_amount = cabin_monthly_price or hall_monthly_price
    booking_amount = months * monthly_amount
    return BookingCalculation(
        days=days,
        months=months,
        total_amount=booking_amount + deposit_amount,
        monthly_amount=monthly_amount,
        deposit_amount=deposit_amount,
        booking_amount=booking_amount,
        start_date=start_date,
        end_date=end_date,
    )


def calculate_auto_end_date(start_date: date) -> date:
    return start_date + relativedelta(months=1)


get_min_end_date = calculate_auto_end_date


def calculate_simple_cabin_booking(
    start_date: date,
    cabin_monthly_price: Optional[float],
    hall_monthly_price: float,
    deposit_amount: float = 0,
) -> BookingCalculation:
    """Price the default one-calendar-month cabin booking."""

    end_date = calculate_auto_end_date(start_date)
    monthly_amount = cabin_monthly_price or hall_monthly_price
    return BookingCalculation(
        days=(end_date - start_date).days + 1,
        months=1,
        total_amount=monthly_amount + deposit_amount,
        monthly_amount=monthly_amount,
        deposit_amount=deposit_amount,
        booking_amount=monthly_amount,
        start_date=start_date,
        end_date=end_date,
    )


def calculate_booking_amount(start_date: date, end_date: date, monthly_price: float) -> SeatBookingQuote:
    """Quote a seat booking.

    Customers see the merchant's monthly price less a fixed markdown; the
    gateway fee (2% of that base) is then added back on top.
    """

    days = (end_date - start_date).days + 1
    base_monthly = monthly_price - SEAT_PRICE_MARKDOWN
    base_amount = math.ceil(days / DAYS_PER_BILLING_MONTH) * base_monthly
    fee_amount = _round_half_up(base_amount * SEAT_GATEWAY_FEE_RATE)
    return SeatBookingQuote(
        amount=_round_half_up(base_amount + fee_amount),
        base_amount=base_amount,
        fee_amount=fee_amount,
        days=days,
        base_monthly=base_monthly,
    )


def compute_platform_fee(base_amount: float, enabled: bool, fee_type: Optional[str], value: Optional[float]) -> int:
    """Platform fee on ``base_amount``; anything but ``flat`` is a percentage. Never exceeds the base."""

    if not enabled:
        return 0
    value = float(value or 0)
    if value <= 0:
        return 0
    if fee_type == "flat":
        fee = max(0, _round_half_up(value))
    else:
        fee = max(0, _round_half_up(base_amount * value / 100))
    return min(fee, max(0, _round_half_up(base_amount)))


def validate_booking_dates(start_date: date, end_date: date, today: Optional[date] = None) -> Optional[str]:
    today = today or date.today()
    if start_date < today:
        return "Start date cannot be in the past"
    if end_date <= start_date:
        return "End date must be after start date"
    if (end_date - start_date).days > MAX_BOOKING_DAYS:
        return "Booking period cannot exceed 12 months"
    return None


def validate_cabin_booking_start_date(start_date: date, today: Optional[date] = None) -> Optional[str]:
    # End dates are derived, so the start date is the only user input to check.
    if start_date < (today or date.today()):
        return "Start date cannot be in the past"
    return None


def validate_booking_amounts(total_amount: float, booking_amount: float, deposit_amount: float) -> Optional[str]:
    if total_amount < 0 or booking_amount < 0 or deposit_amount < 0:
        return "All amounts must be non-negative"
    if abs(total_amount - (booking_amount + deposit_amount)) > AMOUNT_TOLERANCE:
        return (
            f"Total amount (₹{total_amount}) must equal booking amount (₹{booking_amount}) "
            f"plus deposit (₹{deposit_amount})"
        )
    return None


def validate_cabin_booking_data(booking_data: Mapping[str, Any]) -> Optional[str]:
    if not booking_data.get("cabin_id"):
        return "Cabin ID is required"
    if not booking_data.get("private_hall_id"):
        return "Private hall ID is required"
    if not booking_data.get("start_date"):
        return "Start date is required"
    if not booking_data.get("end_date"):
        return "End date is required"
    total_amount = booking_data.get("total_amount")
    if not total_amount or total_amount <= 0:
        return "Valid total amount is required"
    if booking_data.get("booking_amount") and booking_data.get("deposit_amount"):
        return validate_booking_amounts(total_amount, booking_data["booking_amount"], booking_data["deposit_amount"])
    return None


def format_booking_period(start_date: date, end_date: date) -> str:
    return f"{start_date.strftime('%b %d, %Y')} - {end_date.strftime('%b %d, %Y')}"


def format_currency(amount: float) -> str:
    """Format rupees with Indian digit grouping, e.g. ``₹1,50,000.00``."""

    sign = "-" if amount < 0 else ""
    whole, fraction = f"{abs(amount):.2f}".split(".")
    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join(groups + [tail])
    return f"{sign}₹{whole}.{fraction}"


def generate_booking_number(prefix: str = "CB") -> str:
    return f"{prefix}{str(int(time.time() * 1000))[-8:]}"
