"""SQLAlchemy models shared across all services."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, Date, DateTime, Enum as SqlEnum, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class RoleEnum(str, Enum):
    ADMIN = "admin"
    MERCHANT = "merchant"
    STUDENT = "student"
    INCHARGE = "incharge"
    SETTLEMENT_MANAGER = "settlement_manager"


class BookingPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BannerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BannerAudience(str, Enum):
    USER = "user"
    MERCHANT = "merchant"
    BOTH = "both"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), default=None)
    role: Mapped[RoleEnum] = mapped_column(SqlEnum(RoleEnum), default=RoleEnum.STUDENT)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="user")
    cabin_bookings: Mapped[List["CabinBooking"]] = relationship(
        back_populates="user", foreign_keys="CabinBooking.user_id"
    )


class StudyHall(Base):
    __tablename__ = "study_halls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(150))
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    location: Mapped[str] = mapped_column(String(255), index=True)
    rows: Mapped[int] = mapped_column(Integer)
    seats_per_row: Mapped[int] = mapped_column(Integer)
    total_seats: Mapped[int] = mapped_column(Integer)
    daily_price: Mapped[float] = mapped_column(Float, default=0)
    weekly_price: Mapped[float] = mapped_column(Float, default=0)
    monthly_price: Mapped[float] = mapped_column(Float, default=0)
    status: Mapped[str] = mapped_column(String(20), default="active")
    qr_booking_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    qr_code_url: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    seats: Mapped[List["Seat"]] = relationship(back_populates="study_hall", cascade="all, delete-orphan")


class Seat(Base):
    __tablename__ = "seats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    study_hall_id: Mapped[int] = mapped_column(ForeignKey("study_halls.id", ondelete="CASCADE"), index=True)
    seat_id: Mapped[str] = mapped_column(String(20))
    row_name: Mapped[str] = mapped_column(String(10))
    seat_number: Mapped[int] = mapped_column(Integer)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)

    study_hall: Mapped[StudyHall] = relationship(back_populates="seats")


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    booking_number: Mapped[Optional[str]] = mapped_column(String(20), default=None)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    study_hall_id: Mapped[int] = mapped_column(ForeignKey("study_halls.id", ondelete="CASCADE"), index=True)
    seat_id: Mapped[int] = mapped_column(ForeignKey("seats.id", ondelete="CASCADE"), index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    booking_period: Mapped[BookingPeriod] = mapped_column(SqlEnum(BookingPeriod), default=BookingPeriod.MONTHLY)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    payment_status: Mapped[str] = mapped_column(String(20), default="pending")
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped[User] = relationship(back_populates="bookings")
    seat: Mapped[Seat] = relationship()


class PrivateHall(Base):
    __tablename__ = "private_halls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(150))
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    location: Mapped[str] = mapped_column(String(255), index=True)
    monthly_price: Mapped[float] = mapped_column(Float, default=0)
    cabin_layout_json: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    cabin_count: Mapped[int] = mapped_column(Integer, default=0)
    amenities: Mapped[list[str]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(20), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    cabins: Mapped[List["Cabin"]] = relationship(back_populates="private_hall", cascade="all, delete-orphan")


class Cabin(Base):
    __tablename__ = "cabins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    private_hall_id: Mapped[int] = mapped_column(ForeignKey("private_halls.id", ondelete="CASCADE"), index=True)
    cabin_number: Mapped[int] = mapped_column(Integer)
    cabin_name: Mapped[str] = mapped_column(String(100))
    monthly_price: Mapped[Optional[float]] = mapped_column(Float, default=None)
    refundable_deposit: Mapped[float] = mapped_column(Float, default=0)
    max_occupancy: Mapped[int] = mapped_column(Integer, default=1)
    amenities: Mapped[list[str]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(20), default="available")

    private_hall: Mapped[PrivateHall] = relationship(back_populates="cabins")
    bookings: Mapped[List["CabinBooking"]] = relationship(back_populates="cabin")


class CabinBooking(Base):
    __tablename__ = "cabin_bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    booking_number: Mapped[str] = mapped_column(String(20), index=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), index=True, default=None)
    cabin_id: Mapped[int] = mapped_column(ForeignKey("cabins.id", ondelete="CASCADE"), index=True)
    private_hall_id: Mapped[int] = mapped_column(ForeignKey("private_halls.id", ondelete="CASCADE"), index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    months_booked: Mapped[int] = mapped_column(Integer, default=1)
    monthly_amount: Mapped[float] = mapped_column(Float, default=0)
    deposit_amount: Mapped[float] = mapped_column(Float, default=0)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    payment_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    is_vacated: Mapped[bool] = mapped_column(Boolean, default=False)
    vacated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    vacated_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    vacate_reason: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    deposit_refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    guest_name: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(20), default=None)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    user: Mapped[Optional[User]] = relationship(back_populates="cabin_bookings", foreign_keys=[user_id])
    cabin: Mapped[Cabin] = relationship(back_populates="bookings")
    private_hall: Mapped[PrivateHall] = relationship()


class DepositRefund(Base):
    __tablename__ = "deposit_refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    cabin_booking_id: Mapped[int] = mapped_column(
        ForeignKey("cabin_bookings.id", ondelete="CASCADE"), unique=True, index=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), index=True, default=None)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    refund_amount: Mapped[float] = mapped_column(Float)
    refund_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    processed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)

    cabin_booking: Mapped[CabinBooking] = relationship()


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    transaction_number: Mapped[str] = mapped_column(String(30), index=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), index=True, default=None)
    booking_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bookings.id", ondelete="SET NULL"), default=None)
    cabin_booking_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("cabin_bookings.id", ondelete="SET NULL"), index=True, default=None
    )
    amount: Mapped[float] = mapped_column(Float)
    payment_method: Mapped[str] = mapped_column(String(30))
    payment_id: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    cabin_booking: Mapped[Optional[CabinBooking]] = relationship()


class Banner(Base):
    __tablename__ = "banners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(150), default=None)
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    image_url: Mapped[str] = mapped_column(String(500))
    priority: Mapped[int] = mapped_column(Integer, default=0)
    start_date: Mapped[date] = mapped_column(Date, default=date.today)
    end_date: Mapped[Optional[date]] = mapped_column(Date, default=None)
    status: Mapped[BannerStatus] = mapped_column(SqlEnum(BannerStatus), default=BannerStatus.ACTIVE)
    target_audience: Mapped[BannerAudience] = mapped_column(SqlEnum(BannerAudience), default=BannerAudience.BOTH)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PolicyPage(Base):
    __tablename__ = "policy_pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(200))
    content: Mapped[str] = mapped_column(Text)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class SettlementRequest(Base):
    __tablename__ = "settlement_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    requested_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    admin_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    transaction_ids: Mapped[list[int]] = mapped_column(JSON, default=list)
    total_booking_amount: Mapped[float] = mapped_column(Float, default=0)
    total_deposit_amount: Mapped[float] = mapped_column(Float, default=0)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    platform_fee_percentage: Mapped[float] = mapped_column(Float, default=0)
    platform_fee_amount: Mapped[float] = mapped_column(Float, default=0)
    net_settlement_amount: Mapped[float] = mapped_column(Float, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
