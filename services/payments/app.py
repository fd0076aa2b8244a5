from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from hallbook import notifications
from hallbook.booking_utils import compute_platform_fee, generate_booking_number
from hallbook.change_relay import ChangeRelay
from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dependencies import allow_roles, ensure_hall_access, get_current_active_user
from hallbook.errors import PaymentError, ValidationError, register_error_handlers
from hallbook.lifecycle import confirm_cabin_booking_payment, update_deposit_refund
from hallbook.logging_middleware import add_audit_middleware
from hallbook.metrics import add_metrics
from hallbook.models import CabinBooking, DepositRefund, PrivateHall, RoleEnum, SettlementRequest, Transaction, User
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.schemas import (
    DepositRefundRead,
    DepositRefundUpdate,
    PaymentRecord,
    SettlementDecision,
    SettlementRequestCreate,
    SettlementRequestRead,
    TransactionRead,
)

settings = get_settings()
SETTLEMENT_REVIEWERS = {RoleEnum.ADMIN, RoleEnum.SETTLEMENT_MANAGER}
change_relay = ChangeRelay("payments", consume=False)


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
    fastapi_app = FastAPI(title="Payments Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "payments")
    add_metrics(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "payments"}


@app.post(
    "/cabin-bookings/{booking_id}/payments",
    response_model=TransactionRead,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("20/minute")
def record_cabin_booking_payment(
    request: Request,
    booking_id: int,
    payment_in: PaymentRecord,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Transaction:
    booking = db.get(CabinBooking, booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    if current_user.role != RoleEnum.ADMIN and booking.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    if payment_in.status == "completed":
        confirm_cabin_booking_payment(db, booking, payment_in.amount)
    elif booking.payment_status == "paid":
        raise PaymentError("Booking is already paid")
    else:
        booking.payment_status = "failed"

    transaction = Transaction(
        transaction_number=generate_booking_number("TX"),
        user_id=booking.user_id,
        cabin_booking_id=booking.id,
        amount=payment_in.amount,
        payment_method=payment_in.payment_method,
        payment_id=payment_in.payment_id,
        status=payment_in.status,
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)

    if transaction.status == "completed":
        notifications.publish_event(
            notifications.CABIN_BOOKING_PAID,
            {"booking_id": booking.id, "transaction_id": transaction.id, "amount": transaction.amount},
        )
    return transaction


@app.get("/transactions", response_model=List[TransactionRead])
@limiter.limit("30/minute")
def list_transactions(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Transaction]:
    query = db.query(Transaction)
    if current_user.role != RoleEnum.ADMIN:
        query = query.filter(Transaction.user_id == current_user.id)
    return query.order_by(Transaction.created_at.desc()).all()


@app.post("/settlement-requests", response_model=SettlementRequestRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_settlement_request(
    request: Request,
    request_in: SettlementRequestCreate,
    current_user: User = Depends(allow_roles(RoleEnum.MERCHANT)),
    db: Session = Depends(get_db),
) -> SettlementRequest:
    requested_ids = set(request_in.transaction_ids)
    transactions = (
        db.query(Transaction)
        .join(CabinBooking, Transaction.cabin_booking_id == CabinBooking.id)
        .join(PrivateHall, CabinBooking.private_hall_id == PrivateHall.id)
        .filter(
            Transaction.id.in_(requested_ids),
            Transaction.status == "completed",
            PrivateHall.merchant_id == current_user.id,
        )
        .all()
    )
    if len(transactions) != len(requested_ids):
        raise ValidationError("transaction_ids", "Some transactions are not completed or do not belong to your halls")

    open_requests = (
        db.query(SettlementRequest)
        .filter(
            SettlementRequest.merchant_id == current_user.id,
            SettlementRequest.status.in_(("pending", "approved")),
        )
        .all()
    )
    already_settled = {tx_id for req in open_requests for tx_id in req.transaction_ids or []} & requested_ids
    if already_settled:
        raise ValidationError("transaction_ids", f"Transactions {sorted(already_settled)} are already in a settlement request")

    total_amount = sum(tx.amount for tx in transactions)
    total_deposit = sum(tx.cabin_booking.deposit_amount for tx in transactions)
    total_booking = total_amount - total_deposit
    fee = compute_platform_fee(
        total_booking, settings.platform_fee_enabled, settings.platform_fee_type, settings.platform_fee_value
    )
    settlement = SettlementRequest(
        merchant_id=current_user.id,
        requested_by=current_user.id,
        transaction_ids=sorted(requested_ids),
        total_booking_amount=total_booking,
        total_deposit_amount=total_deposit,
        total_amount=total_amount,
        platform_fee_percentage=settings.platform_fee_value if settings.platform_fee_type != "flat" else 0,
        platform_fee_amount=fee,
        net_settlement_amount=total_amount - fee,
        notes=request_in.notes,
    )
    db.add(settlement)
    db.commit()
    db.refresh(settlement)
    return settlement


@app.get("/settlement-requests", response_model=List[SettlementRequestRead])
@limiter.limit("30/minute")
def list_settlement_requests(
    request: Request,
    current_user: User = Depends(allow_roles(RoleEnum.MERCHANT, *SETTLEMENT_REVIEWERS)),
    db: Session = Depends(get_db),
) -> List[SettlementRequest]:
    query = db.query(SettlementRequest)
    if current_user.role == RoleEnum.MERCHANT:
        query = query.filter(SettlementRequest.merchant_id == current_user.id)
    return query.order_by(SettlementRequest.created_at.desc()).all()


def _decide(db: Session, request_id: int, reviewer: User, new_status: str, notes: str | None) -> SettlementRequest:
    settlement = db.get(SettlementRequest, request_id)
    if not settlement:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Settlement request not found")
    if settlement.status != "pending":
        raise ValidationError("status", f"Settlement request is already {settlement.status}")
    settlement.status = new_status
    settlement.admin_id = reviewer.id
    settlement.processed_at = datetime.utcnow()
    if notes:
        settlement.notes = f"{settlement.notes}\n{notes}" if settlement.notes else notes
    db.commit()
    db.refresh(settlement)
    return settlement


@app.post("/settlement-requests/{request_id}/approve", response_model=SettlementRequestRead)
@limiter.limit("10/minute")
def approve_settlement_request(
    request: Request,
    request_id: int,
    decision: SettlementDecision,
    current_user: User = Depends(allow_roles(*SETTLEMENT_REVIEWERS)),
    db: Session = Depends(get_db),
) -> SettlementRequest:
    return _decide(db, request_id, current_user, "approved", decision.notes)


@app.post("/settlement-requests/{request_id}/reject", response_model=SettlementRequestRead)
@limiter.limit("10/minute")
def reject_settlement_request(
    request: Request,
    request_id: int,
    decision: SettlementDecision,
    current_user: User = Depends(allow_roles(*SETTLEMENT_REVIEWERS)),
    db: Session = Depends(get_db),
) -> SettlementRequest:
    return _decide(db, request_id, current_user, "rejected", decision.notes)


@app.get("/deposit-refunds", response_model=List[DepositRefundRead])
@limiter.limit("30/minute")
def list_deposit_refunds(
    request: Request,
    refund_status: Optional[str] = None,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[DepositRefund]:
    query = db.query(DepositRefund)
    if current_user.role == RoleEnum.MERCHANT:
        query = query.filter(DepositRefund.merchant_id == current_user.id)
    elif current_user.role != RoleEnum.ADMIN:
        query = query.filter(DepositRefund.user_id == current_user.id)
    if refund_status:
        query = query.filter(DepositRefund.refund_status == refund_status)
    return query.order_by(DepositRefund.requested_at.desc()).all()


@app.patch("/deposit-refunds/{refund_id}", response_model=DepositRefundRead)
@limiter.limit("20/minute")
def update_deposit_refund_status(
    request: Request,
    refund_id: int,
    update_in: DepositRefundUpdate,
    current_user: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.MERCHANT)),
    db: Session = Depends(get_db),
) -> DepositRefund:
    refund = db.get(DepositRefund, refund_id)
    if not refund:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deposit refund not found")
    ensure_hall_access(current_user, refund.merchant_id)
    return update_deposit_refund(
        db, refund, update_in.status, current_user.id, update_in.payment_reference, update_in.notes
    )
