from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from string import ascii_uppercase
from typing import Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from hallbook import notifications
from hallbook.availability import check_seat_availability, get_date_availability, get_seat_availability_map
from hallbook.booking_utils import calculate_booking_amount, generate_booking_number, validate_booking_dates
from hallbook.change_relay import ChangeRelay
from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dependencies import allow_roles, can_manage_hall, ensure_hall_access, get_current_active_user
from hallbook.errors import SeatUnavailableError, ValidationError, register_error_handlers
from hallbook.lifecycle import cancel_stale_pending_bookings, release_expired_bookings, update_seat_booking_status
from hallbook.logging_middleware import add_audit_middleware
from hallbook.metrics import add_metrics
from hallbook.models import Booking, RoleEnum, Seat, StudyHall, User
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.schemas import (
    BookingCreate,
    BookingRead,
    BookingStatusUpdate,
    DateAvailabilityRead,
    SeatAvailabilityRead,
    StudyHallCreate,
    StudyHallRead,
)

settings = get_settings()
MAX_AVAILABILITY_DATES = 62
change_relay = ChangeRelay("bookings", consume=False)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    if settings.change_relay_enabled:
        change_relay.start()
    yield
    if settings.change_relay_enabled:
        change_relay.stop()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    add_metrics(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


def _get_study_hall_or_404(db: Session, study_hall_id: int) -> StudyHall:
    hall = db.get(StudyHall, study_hall_id)
    if not hall:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Study hall not found")
    return hall


def _ensure_valid_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise ValidationError("end_date", "End date must not be before start date")


@app.post("/study-halls", response_model=StudyHallRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_study_hall(
    request: Request,
    hall_in: StudyHallCreate,
    current_user: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.MERCHANT)),
    db: Session = Depends(get_db),
) -> StudyHall:
    row_names = hall_in.custom_row_names or list(ascii_uppercase[: hall_in.rows])
    hall = StudyHall(
        merchant_id=current_user.id,
        name=hall_in.name,
        description=hall_in.description,
        location=hall_in.location,
        rows=hall_in.rows,
        seats_per_row=hall_in.seats_per_row,
        total_seats=hall_in.rows * hall_in.seats_per_row,
        daily_price=hall_in.daily_price,
        weekly_price=hall_in.weekly_price,
        monthly_price=hall_in.monthly_price,
    )
    hall.seats = [
        Seat(seat_id=f"{row_name}{number}", row_name=row_name, seat_number=number)
        for row_name in row_names
        for number in range(1, hall_in.seats_per_row + 1)
    ]
    db.add(hall)
    db.commit()
    db.refresh(hall)
    return hall


@app.get("/study-halls/{study_hall_id}", response_model=StudyHallRead)
@limiter.limit("60/minute")
def get_study_hall(request: Request, study_hall_id: int, db: Session = Depends(get_db)) -> StudyHall:
    return _get_study_hall_or_404(db, study_hall_id)


@app.get("/seats/{seat_id}/availability", response_model=SeatAvailabilityRead)
@limiter.limit("60/minute")
def seat_availability(
    request: Request,
    seat_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
) -> dict:
    if not db.get(Seat, seat_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Seat not found")
    _ensure_valid_range(start_date, end_date)
    result = check_seat_availability(db, seat_id, start_date, end_date)
    return {"seat_id": seat_id, **asdict(result)}


@app.get("/study-halls/{study_hall_id}/availability", response_model=Dict[int, bool])
@limiter.limit("40/minute")
def study_hall_availability(
    request: Request,
    study_hall_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
) -> Dict[int, bool]:
    _get_study_hall_or_404(db, study_hall_id)
    _ensure_valid_range(start_date, end_date)
    return get_seat_availability_map(db, study_hall_id, start_date, end_date)


@app.get("/study-halls/{study_hall_id}/availability/dates", response_model=Dict[date, DateAvailabilityRead])
@limiter.limit("20/minute")
def study_hall_date_availability(
    request: Request,
    study_hall_id: int,
    dates: List[date] = Query(...),
    db: Session = Depends(get_db),
) -> dict:
    _get_study_hall_or_404(db, study_hall_id)
    if len(dates) > MAX_AVAILABILITY_DATES:
        raise ValidationError("dates", f"At most {MAX_AVAILABILITY_DATES} dates can be checked at once")
    return {day: asdict(entry) for day, entry in get_date_availability(db, study_hall_id, dates).items()}


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Booking:
    seat = db.get(Seat, booking_in.seat_id)
    if not seat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Seat not found")
    hall = seat.study_hall
    if hall.status != "active":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Study hall not found or inactive")

    error = validate_booking_dates(booking_in.start_date, booking_in.end_date)
    if error:
        raise ValidationError("dates", error)
    if not check_seat_availability(db, seat.id, booking_in.start_date, booking_in.end_date).available:
        raise SeatUnavailableError(seat.seat_id)

    quote = calculate_booking_amount(booking_in.start_date, booking_in.end_date, hall.monthly_price)
    booking = Booking(
        booking_number=generate_booking_number("SB"),
        user_id=current_user.id,
        study_hall_id=hall.id,
        seat_id=seat.id,
        start_date=booking_in.start_date,
        end_date=booking_in.end_date,
        booking_period=booking_in.booking_period,
        total_amount=quote.amount,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)

    notifications.publish_event(
        notifications.SEAT_BOOKING_CREATED,
        {
            "booking_id": booking.id,
            "seat_id": seat.seat_id,
            "study_hall_id": hall.id,
            "start_date": booking.start_date,
            "end_date": booking.end_date,
        },
    )
    return booking


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_my_bookings(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Booking]:
    return db.query(Booking).filter(Booking.user_id == current_user.id).order_by(Booking.start_date.desc()).all()


@app.get("/bookings", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_bookings(
    request: Request,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> List[Booking]:
    return db.query(Booking).order_by(Booking.start_date.desc()).all()


@app.post("/bookings/release-expired")
@limiter.limit("10/minute")
def release_expired(
    request: Request,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, int]:
    return {
        "released_count": release_expired_bookings(db),
        "cancelled_pending_count": cancel_stale_pending_bookings(db, settings.pending_booking_timeout_minutes),
    }


def _get_booking_or_404(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


@app.patch("/bookings/{booking_id}/status", response_model=BookingRead)
@limiter.limit("20/minute")
def update_booking_status(
    request: Request,
    booking_id: int,
    status_in: BookingStatusUpdate,
    current_user: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.MERCHANT)),
    db: Session = Depends(get_db),
) -> Booking:
    booking = _get_booking_or_404(db, booking_id)
    hall = _get_study_hall_or_404(db, booking.study_hall_id)
    ensure_hall_access(current_user, hall.merchant_id)
    return update_seat_booking_status(db, booking, status_in.status)


@app.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Booking:
    booking = _get_booking_or_404(db, booking_id)
    hall = _get_study_hall_or_404(db, booking.study_hall_id)
    if booking.user_id != current_user.id and not can_manage_hall(current_user, hall.merchant_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return update_seat_booking_status(db, booking, "cancelled")
