from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from hallbook import notifications
from hallbook.availability import (
    CabinStatus,
    build_layout_cabin_mapping,
    compute_availability_map,
    compute_hall_cabin_status,
    find_cabin_conflicts,
    is_cabin_booking_blocking,
    layout_from_cabins,
    load_cabins_and_blocking_bookings,
)
from hallbook.booking_utils import (
    calculate_cabin_booking,
    calculate_simple_cabin_booking,
    generate_booking_number,
    validate_booking_dates,
    validate_cabin_booking_data,
    validate_cabin_booking_start_date,
)
from hallbook.cache import SimpleTTLCache
from hallbook.change_relay import ChangeRelay
from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dependencies import allow_roles, ensure_hall_access, get_current_active_user, require_service_key
from hallbook.errors import CabinUnavailableError, ValidationError, register_error_handlers
from hallbook.lifecycle import (
    BookingLifecycleManager,
    auto_expire_cabin_bookings,
    get_cabin_availability_status,
    vacate_cabin_booking,
)
from hallbook.logging_middleware import add_audit_middleware
from hallbook.metrics import add_metrics
from hallbook.models import Cabin, CabinBooking, PrivateHall, RoleEnum, User
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.realtime import ChangeEvent, RealTimeManager
from hallbook.schemas import (
    CabinAvailabilityRead,
    CabinBookingCreate,
    CabinBookingRead,
    CabinVacateRequest,
    HallStatusRead,
    LifecycleRunRead,
    PrivateHallCreate,
    PrivateHallRead,
)

settings = get_settings()
hall_status_cache: SimpleTTLCache[Dict[str, Any]] = SimpleTTLCache(ttl=settings.hall_status_cache_ttl)


def _hall_status_key(private_hall_id: int) -> str:
    return f"hall-status:{private_hall_id}"


def _invalidate_hall_status(change: ChangeEvent) -> None:
    private_hall_id = change.record.get("private_hall_id")
    if private_hall_id is None:
        hall_status_cache.pop_prefix("hall-status:")
        return
    hall_status_cache.pop(_hall_status_key(private_hall_id))


cache_invalidator = RealTimeManager(
    on_cabin_booking_change=_invalidate_hall_status,
    on_cabin_change=_invalidate_hall_status,
)
lifecycle_manager = BookingLifecycleManager(
    interval=settings.lifecycle_interval_seconds,
    change_delay=settings.lifecycle_change_delay_seconds,
    pending_timeout_minutes=settings.pending_booking_timeout_minutes,
)
# Hears bookings and payments made by the other services.
change_relay = ChangeRelay("cabins")


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    cache_invalidator.start()
    if settings.change_relay_enabled:
        change_relay.start()
    if settings.lifecycle_enabled:
        await lifecycle_manager.start()
    yield
    if settings.lifecycle_enabled:
        await lifecycle_manager.stop()
    if settings.change_relay_enabled:
        change_relay.stop()
    cache_invalidator.stop()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Cabins Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "cabins")
    add_metrics(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "cabins"}


def _get_hall_or_404(db: Session, private_hall_id: int) -> PrivateHall:
    hall = db.get(PrivateHall, private_hall_id)
    if not hall:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Private hall not found")
    return hall


@app.post("/private-halls", response_model=PrivateHallRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_private_hall(
    request: Request,
    hall_in: PrivateHallCreate,
    current_user: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.MERCHANT)),
    db: Session = Depends(get_db),
) -> PrivateHall:
    layout = hall_in.cabin_layout.model_dump() if hall_in.cabin_layout else None
    hall = PrivateHall(
        merchant_id=current_user.id,
        name=hall_in.name,
        description=hall_in.description,
        location=hall_in.location,
        monthly_price=hall_in.monthly_price,
        amenities=hall_in.amenities,
        cabin_layout_json=layout,
    )
    db.add(hall)
    db.flush()

    if hall_in.cabin_layout:
        cabins = [
            Cabin(
                private_hall_id=hall.id,
                cabin_number=number,
                cabin_name=layout_cabin.name,
                monthly_price=layout_cabin.monthly_price,
                refundable_deposit=layout_cabin.refundable_deposit or 0,
                amenities=layout_cabin.amenities,
            )
            for number, layout_cabin in enumerate(hall_in.cabin_layout.cabins, start=1)
        ]
    else:
        cabins = [
            Cabin(private_hall_id=hall.id, cabin_number=number, cabin_name=f"Cabin {number}")
            for number in range(1, hall_in.cabin_count + 1)
        ]
    db.add_all(cabins)
    hall.cabin_count = len(cabins)
    db.commit()
    db.refresh(hall)
    return hall


@app.get("/private-halls/{private_hall_id}", response_model=PrivateHallRead)
@limiter.limit("60/minute")
def get_private_hall(request: Request, private_hall_id: int, db: Session = Depends(get_db)) -> PrivateHall:
    return _get_hall_or_404(db, private_hall_id)


@app.get("/private-halls/{private_hall_id}/availability", response_model=Dict[str, CabinAvailabilityRead])
@limiter.limit("60/minute")
def private_hall_availability(
    request: Request,
    private_hall_id: int,
    db: Session = Depends(get_db),
) -> Dict[str, Dict[str, Any]]:
    hall = _get_hall_or_404(db, private_hall_id)
    cabins, bookings = load_cabins_and_blocking_bookings(db, hall.id)
    layout = hall.cabin_layout_json or layout_from_cabins(cabins)
    mapping = build_layout_cabin_mapping(layout, cabins)
    availability = compute_availability_map(layout, cabins, bookings, mapping)
    return {
        layout_id: {"status": entry.status.value, "bookings": entry.bookings}
        for layout_id, entry in availability.items()
    }


@app.get("/private-halls/{private_hall_id}/status", response_model=HallStatusRead)
@limiter.limit("30/minute")
def private_hall_status(
    request: Request,
    private_hall_id: int,
    db: Session = Depends(get_db),
    force_refresh: bool = False,
) -> Dict[str, Any]:
    hall = _get_hall_or_404(db, private_hall_id)
    cache_key = _hall_status_key(hall.id)
    if not force_refresh:
        cached = hall_status_cache.get(cache_key)
        if cached:
            return cached
    _, bookings = load_cabins_and_blocking_bookings(db, hall.id)
    hall_status = compute_hall_cabin_status(bookings, hall.id)
    payload = {
        "private_hall_id": hall.id,
        **asdict(hall_status),
        "checked_at": datetime.utcnow(),
    }
    hall_status_cache.set(cache_key, payload)
    return payload


@app.post("/cabin-bookings", response_model=CabinBookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_cabin_booking(
    request: Request,
    booking_in: CabinBookingCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> CabinBooking:
    cabin = db.get(Cabin, booking_in.cabin_id)
    if not cabin:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cabin not found")
    hall = cabin.private_hall
    if hall.status != "active":
        raise CabinUnavailableError(cabin.cabin_name)

    error = validate_cabin_booking_start_date(booking_in.start_date)
    if error:
        raise ValidationError("start_date", error)
    if booking_in.end_date is not None:
        error = validate_booking_dates(booking_in.start_date, booking_in.end_date)
        if error:
            raise ValidationError("end_date", error)
        calculation = calculate_cabin_booking(
            booking_in.start_date,
            booking_in.end_date,
            cabin.monthly_price,
            hall.monthly_price,
            cabin.refundable_deposit,
        )
    else:
        calculation = calculate_simple_cabin_booking(
            booking_in.start_date, cabin.monthly_price, hall.monthly_price, cabin.refundable_deposit
        )

    if cabin.status == CabinStatus.MAINTENANCE.value or find_cabin_conflicts(
        db, cabin.id, calculation.start_date, calculation.end_date
    ):
        raise CabinUnavailableError(cabin.cabin_name)

    error = validate_cabin_booking_data(
        {
            "cabin_id": cabin.id,
            "private_hall_id": hall.id,
            "start_date": calculation.start_date,
            "end_date": calculation.end_date,
            "total_amount": calculation.total_amount,
            "booking_amount": calculation.booking_amount,
            "deposit_amount": calculation.deposit_amount,
        }
    )
    if error:
        raise ValidationError("booking", error)

    booking = CabinBooking(
        booking_number=generate_booking_number(),
        user_id=current_user.id,
        cabin_id=cabin.id,
        private_hall_id=hall.id,
        start_date=calculation.start_date,
        end_date=calculation.end_date,
        months_booked=calculation.months,
        monthly_amount=calculation.monthly_amount,
        deposit_amount=calculation.deposit_amount,
        total_amount=calculation.total_amount,
        guest_name=booking_in.guest_name,
        guest_phone=booking_in.guest_phone,
        guest_email=booking_in.guest_email,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)

    notifications.publish_event(
        notifications.CABIN_BOOKING_CREATED,
        {
            "booking_id": booking.id,
            "booking_number": booking.booking_number,
            "cabin_id": booking.cabin_id,
            "private_hall_id": booking.private_hall_id,
            "start_date": booking.start_date,
            "end_date": booking.end_date,
        },
    )
    return booking


@app.get("/cabin-bookings/me", response_model=List[CabinBookingRead])
@limiter.limit("30/minute")
def list_my_cabin_bookings(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[CabinBooking]:
    return (
        db.query(CabinBooking)
        .filter(CabinBooking.user_id == current_user.id)
        .order_by(CabinBooking.start_date.desc())
        .all()
    )


@app.get("/private-halls/{private_hall_id}/cabin-bookings", response_model=List[CabinBookingRead])
@limiter.limit("30/minute")
def list_hall_cabin_bookings(
    request: Request,
    private_hall_id: int,
    active_only: bool = False,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[CabinBooking]:
    hall = _get_hall_or_404(db, private_hall_id)
    ensure_hall_access(current_user, hall.merchant_id)
    bookings = (
        db.query(CabinBooking)
        .filter(CabinBooking.private_hall_id == hall.id)
        .order_by(CabinBooking.end_date.desc())
        .all()
    )
    if active_only:
        today = date.today()
        bookings = [booking for booking in bookings if is_cabin_booking_blocking(booking, today)]
    return bookings


@app.post("/cabin-vacate")
@limiter.limit("20/minute")
def cabin_vacate(
    request: Request,
    payload: CabinVacateRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if payload.action == "vacate":
        if payload.booking_id is None:
            raise ValidationError("bookingId")
        booking = db.get(CabinBooking, payload.booking_id)
        if not booking:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
        ensure_hall_access(
            current_user, booking.private_hall.merchant_id, "Insufficient permissions to vacate this booking"
        )
        reason = payload.reason or f"Manual vacation by {current_user.role.value}"
        return vacate_cabin_booking(db, booking, current_user.id, reason)

    if payload.action == "auto-expire":
        if current_user.role != RoleEnum.ADMIN:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can trigger auto-expiration")
        return {"success": True, "expired_count": auto_expire_cabin_bookings(db)}

    if payload.cabin_id is None:
        raise ValidationError("cabinId")
    cabin_status = get_cabin_availability_status(db, payload.cabin_id)
    if cabin_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cabin not found")
    return {"success": True, "status": asdict(cabin_status)}


@app.post("/internal/lifecycle/run", response_model=LifecycleRunRead, dependencies=[Depends(require_service_key)])
def run_lifecycle_checks() -> Dict[str, int]:
    return asdict(lifecycle_manager.run_checks())
