from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import or_
from sqlalchemy.orm import Session

from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dependencies import allow_roles, ensure_hall_access
from hallbook.errors import ValidationError, register_error_handlers
from hallbook.logging_middleware import add_audit_middleware
from hallbook.metrics import add_metrics
from hallbook.models import Banner, BannerAudience, BannerStatus, PolicyPage, RoleEnum, StudyHall, User
from hallbook.qr import store_study_hall_qr
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.schemas import (
    BannerCreate,
    BannerRead,
    BannerUpdate,
    PolicyPageCreate,
    PolicyPageRead,
    PolicyPageUpdate,
    QRCodeRead,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Content Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "content")
    add_metrics(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "content"}


@app.get("/banners", response_model=List[BannerRead])
@limiter.limit("60/minute")
def list_active_banners(
    request: Request,
    target_audience: Optional[BannerAudience] = None,
    db: Session = Depends(get_db),
) -> List[Banner]:
    today = date.today()
    query = db.query(Banner).filter(
        Banner.status == BannerStatus.ACTIVE,
        Banner.start_date <= today,
        or_(Banner.end_date.is_(None), Banner.end_date >= today),
    )
    if target_audience and target_audience != BannerAudience.BOTH:
        query = query.filter(Banner.target_audience.in_((target_audience, BannerAudience.BOTH)))
    return query.order_by(Banner.priority.desc(), Banner.created_at.desc()).all()


@app.post("/banners", response_model=BannerRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_banner(
    request: Request,
    banner_in: BannerCreate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> Banner:
    if banner_in.end_date and banner_in.end_date < banner_in.start_date:
        raise ValidationError("end_date", "End date must not be before start date")
    banner = Banner(**banner_in.model_dump())
    db.add(banner)
    db.commit()
    db.refresh(banner)
    return banner


@app.put("/banners/{banner_id}", response_model=BannerRead)
@limiter.limit("10/minute")
def update_banner(
    request: Request,
    banner_id: int,
    banner_in: BannerUpdate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> Banner:
    banner = db.get(Banner, banner_id)
    if not banner:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Banner not found")
    for field, value in banner_in.model_dump(exclude_unset=True).items():
        setattr(banner, field, value)
    if banner.end_date and banner.end_date < banner.start_date:
        raise ValidationError("end_date", "End date must not be before start date")
    db.commit()
    db.refresh(banner)
    return banner


@app.get("/policies", response_model=List[PolicyPageRead])
@limiter.limit("60/minute")
def list_policies(request: Request, published_only: bool = True, db: Session = Depends(get_db)) -> List[PolicyPage]:
    query = db.query(PolicyPage)
    if published_only:
        query = query.filter(PolicyPage.is_published.is_(True))
    return query.order_by(PolicyPage.title).all()


@app.get("/policies/{slug}", response_model=PolicyPageRead)
@limiter.limit("60/minute")
def get_policy(request: Request, slug: str, db: Session = Depends(get_db)) -> PolicyPage:
    page = db.query(PolicyPage).filter(PolicyPage.slug == slug, PolicyPage.is_published.is_(True)).first()
    if not page:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Policy page not found")
    return page


@app.post("/policies", response_model=PolicyPageRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_policy(
    request: Request,
    page_in: PolicyPageCreate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> PolicyPage:
    if db.query(PolicyPage).filter(PolicyPage.slug == page_in.slug).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Slug already in use")
    page = PolicyPage(**page_in.model_dump())
    db.add(page)
    db.commit()
    db.refresh(page)
    return page


@app.put("/policies/{slug}", response_model=PolicyPageRead)
@limiter.limit("10/minute")
def update_policy(
    request: Request,
    slug: str,
    page_in: PolicyPageUpdate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> PolicyPage:
    page = db.query(PolicyPage).filter(PolicyPage.slug == slug).first()
    if not page:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Policy page not found")
    for field, value in page_in.model_dump(exclude_unset=True).items():
        setattr(page, field, value)
    page.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(page)
    return page


@app.post("/study-halls/{study_hall_id}/qr-code", response_model=QRCodeRead)
@limiter.limit("10/minute")
def generate_study_hall_qr(
    request: Request,
    study_hall_id: int,
    current_user: User = Depends(allow_roles(RoleEnum.ADMIN, RoleEnum.MERCHANT)),
    db: Session = Depends(get_db),
) -> QRCodeRead:
    hall = db.get(StudyHall, study_hall_id)
    if not hall:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Study hall not found")
    ensure_hall_access(current_user, hall.merchant_id)

    stored = store_study_hall_qr(hall.id, settings.public_domain, settings.media_root, settings.media_url)
    hall.qr_code_url = stored.public_url
    db.commit()
    return QRCodeRead(qr_code_url=stored.public_url, study_hall_name=hall.name, booking_url=stored.booking_url)
