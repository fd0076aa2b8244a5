"""Pydantic schemas shared across the microservices."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from .models import BannerAudience, BannerStatus, BookingPeriod


class LayoutCabin(BaseModel):
    id: str
    name: str
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    monthly_price: Optional[float] = None
    refundable_deposit: Optional[float] = None
    amenities: List[str] = Field(default_factory=list)


class CabinLayout(BaseModel):
    cabins: List[LayoutCabin] = Field(..., min_length=1)
    layout: Dict[str, float] = Field(default_factory=dict)


class PrivateHallCreate(BaseModel):
    name: str = Field(..., max_length=150)
    description: Optional[str] = None
    location: str
    monthly_price: float = Field(..., gt=0)
    amenities: List[str] = Field(default_factory=list)
    cabin_layout: Optional[CabinLayout] = None
    cabin_count: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _needs_cabins(self) -> "PrivateHallCreate":
        if self.cabin_layout is None and self.cabin_count == 0:
            raise ValueError("Provide a cabin layout or a cabin count")
        return self


class CabinRead(BaseModel):
    id: int
    private_hall_id: int
    cabin_number: int
    cabin_name: str
    monthly_price: Optional[float]
    refundable_deposit: float
    max_occupancy: int
    amenities: List[str]
    status: str

    model_config = {"from_attributes": True}


class PrivateHallRead(BaseModel):
    id: int
    merchant_id: int
    name: str
    description: Optional[str]
    location: str
    monthly_price: float
    cabin_count: int
    amenities: List[str]
    status: str
    cabin_layout_json: Optional[Dict[str, Any]]
    cabins: List[CabinRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class CabinAvailabilityRead(BaseModel):
    status: str
    bookings: int


class HallStatusRead(BaseModel):
    private_hall_id: int
    status: str
    booked_until: Optional[date] = None
    days_remaining: Optional[int] = None
    checked_at: datetime


class CabinBookingCreate(BaseModel):
    cabin_id: int
    start_date: date
    end_date: Optional[date] = None
    guest_name: Optional[str] = Field(None, max_length=100)
    guest_phone: Optional[str] = Field(None, max_length=20)
    guest_email: Optional[EmailStr] = None


class CabinBookingRead(BaseModel):
    id: int
    booking_number: str
    user_id: Optional[int]
    cabin_id: int
    private_hall_id: int
    start_date: date
    end_date: date
    months_booked: int
    monthly_amount: float
    deposit_amount: float
    total_amount: float
    payment_status: str
    status: str
    is_vacated: bool
    vacated_at: Optional[datetime]
    vacate_reason: Optional[str]
    deposit_refunded: bool

    model_config = {"from_attributes": True}


class CabinVacateRequest(BaseModel):
    action: Literal["vacate", "auto-expire", "get-status"]
    booking_id: Optional[int] = Field(None, alias="bookingId")
    cabin_id: Optional[int] = Field(None, alias="cabinId")
    reason: Optional[str] = Field(None, max_length=255)

    model_config = {"populate_by_name": True}


class CabinAvailabilityStatusRead(BaseModel):
    is_available: bool
    status_reason: str
    booked_until: Optional[date]
    booking_id: Optional[int]
    days_remaining: int


class StudyHallCreate(BaseModel):
    name: str = Field(..., max_length=150)
    description: Optional[str] = None
    location: str
    rows: int = Field(..., ge=1, le=26)
    seats_per_row: int = Field(..., ge=1, le=100)
    custom_row_names: Optional[List[str]] = None
    daily_price: float = Field(0, ge=0)
    weekly_price: float = Field(0, ge=0)
    monthly_price: float = Field(..., gt=100)

    @model_validator(mode="after")
    def _row_names_match(self) -> "StudyHallCreate":
        if self.custom_row_names is not None and len(self.custom_row_names) != self.rows:
            raise ValueError("custom_row_names must name every row")
        return self


class SeatRead(BaseModel):
    id: int
    seat_id: str
    row_name: str
    seat_number: int
    is_available: bool

    model_config = {"from_attributes": True}


class StudyHallRead(BaseModel):
    id: int
    merchant_id: int
    name: str
    location: str
    rows: int
    seats_per_row: int
    total_seats: int
    monthly_price: float
    status: str
    qr_code_url: Optional[str]
    seats: List[SeatRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class BookingConflictRead(BaseModel):
    booking_id: int
    start_date: date
    end_date: date
    user_id: int


class SeatAvailabilityRead(BaseModel):
    seat_id: int
    available: bool
    conflicts: List[BookingConflictRead]


class DateAvailabilityRead(BaseModel):
    date: date
    available_seats: List[int]
    occupied_seats: List[int]
    total_seats: int


class BookingCreate(BaseModel):
    seat_id: int
    start_date: date
    end_date: date
    booking_period: BookingPeriod = BookingPeriod.MONTHLY


class BookingRead(BaseModel):
    id: int
    booking_number: Optional[str]
    user_id: int
    study_hall_id: int
    seat_id: int
    start_date: date
    end_date: date
    booking_period: BookingPeriod
    status: str
    payment_status: str
    total_amount: float

    model_config = {"from_attributes": True}


class BookingStatusUpdate(BaseModel):
    status: Literal["confirmed", "active", "completed", "cancelled"]


class PaymentRecord(BaseModel):
    amount: float = Field(..., gt=0)
    payment_method: str = Field("upi", max_length=30)
    payment_id: Optional[str] = Field(None, max_length=100)
    status: Literal["completed", "failed"] = "completed"


class TransactionRead(BaseModel):
    id: int
    transaction_number: str
    user_id: Optional[int]
    cabin_booking_id: Optional[int]
    booking_id: Optional[int]
    amount: float
    payment_method: str
    payment_id: Optional[str]
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class SettlementRequestCreate(BaseModel):
    transaction_ids: List[int] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class SettlementDecision(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class SettlementRequestRead(BaseModel):
    id: int
    merchant_id: int
    requested_by: int
    admin_id: Optional[int]
    transaction_ids: List[int]
    total_booking_amount: float
    total_deposit_amount: float
    total_amount: float
    platform_fee_percentage: float
    platform_fee_amount: float
    net_settlement_amount: float
    notes: Optional[str]
    status: str
    created_at: datetime
    processed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class DepositRefundUpdate(BaseModel):
    status: Literal["processing", "completed", "rejected"]
    payment_reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class DepositRefundRead(BaseModel):
    id: int
    cabin_booking_id: int
    user_id: Optional[int]
    merchant_id: int
    refund_amount: float
    refund_status: str
    refund_reason: Optional[str]
    requested_at: datetime
    processed_at: Optional[datetime]
    processed_by: Optional[int]
    payment_reference: Optional[str]
    notes: Optional[str]

    model_config = {"from_attributes": True}


class BannerBase(BaseModel):
    title: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = None
    image_url: str
    priority: int = 0
    start_date: date = Field(default_factory=date.today)
    end_date: Optional[date] = None
    status: BannerStatus = BannerStatus.ACTIVE
    target_audience: BannerAudience = BannerAudience.BOTH


class BannerCreate(BannerBase):
    pass


class BannerUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = None
    image_url: Optional[str] = None
    priority: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[BannerStatus] = None
    target_audience: Optional[BannerAudience] = None


class BannerRead(BannerBase):
    id: int
    created_at: datetime

    model_config = {"from_attributes": True}


class PolicyPageBase(BaseModel):
    slug: str = Field(..., pattern=r"^[a-z0-9-]+$", max_length=100)
    title: str = Field(..., max_length=200)
    content: str
    is_published: bool = False


class PolicyPageCreate(PolicyPageBase):
    pass


class PolicyPageUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    content: Optional[str] = None
    is_published: Optional[bool] = None


class PolicyPageRead(PolicyPageBase):
    id: int
    created_at: datetime
    updated_at: Optional[datetime]

    model_config = {"from_attributes": True}


class QRCodeRead(BaseModel):
    success: bool = True
    qr_code_url: str
    study_hall_name: str
    booking_url: str


class LifecycleRunRead(BaseModel):
    released_seat_bookings: int
    expired_cabin_bookings: int
    cancelled_pending_bookings: int = 0
