from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from common.admission import BookingAdmissionEngine, BookingRequest
from common.cancellation import Caller, cancel_booking
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_caller, get_clock, get_current_profile, require_admin
from common.errors import InvalidRange, MissingBookingDetails, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Booking, Profile
from common.quota import QuotaService
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import AvailabilityRead, BookingCreate, BookingRead, QuotaRead
from common.timeutils import local_zone, to_storage

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
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
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def get_admission_engine(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingAdmissionEngine:
    return BookingAdmissionEngine(db, settings=settings, clock=clock)


def get_quota_service(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> QuotaService:
    return QuotaService(db, settings=settings, clock=clock)


def _booking_rows(query) -> List[BookingRead]:
    """Run a ``(Booking, Profile.full_name)`` query and attach the booker's name."""

    return [
        BookingRead.model_validate(booking).model_copy(update={"booked_by": full_name})
        for booking, full_name in query.all()
    ]


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.get("/rooms", response_model=List[str])
def list_rooms() -> List[str]:
    return settings.bookable_rooms


@app.get("/bookings", response_model=List[BookingRead])
@limiter.limit("60/minute")
def list_bookings(
    request: Request,
    room_id: Optional[str] = None,
    start: Optional[datetime] = Query(None, description="Only bookings starting at or after this instant"),
    end: Optional[datetime] = Query(None, description="Only bookings starting before this instant"),
    _: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> List[BookingRead]:
    tz = local_zone(settings.local_timezone)
    query = db.query(Booking, Profile.full_name).join(Profile, Booking.user_id == Profile.id)
    if room_id:
        query = query.filter(Booking.room_id == room_id)
    try:
        if start:
            query = query.filter(Booking.start_time >= to_storage(start, tz))
        if end:
            query = query.filter(Booking.start_time < to_storage(end, tz))
    except OverflowError as exc:
        raise InvalidRange("Calendar window is outside the supported calendar") from exc
    return _booking_rows(query.order_by(Booking.start_time))


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("60/minute")
def my_bookings(
    request: Request,
    past: bool = False,
    current_profile: Profile = Depends(get_current_profile),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db),
) -> List[BookingRead]:
    now = clock()
    query = db.query(Booking, Profile.full_name).join(Profile, Booking.user_id == Profile.id)
    query = query.filter(Booking.user_id == current_profile.id)
    if past:
        query = query.filter(Booking.start_time < now).order_by(Booking.start_time.desc())
    else:
        query = query.filter(Booking.start_time >= now).order_by(Booking.start_time)
    return _booking_rows(query.limit(20))


@app.get("/bookings/availability", response_model=AvailabilityRead)
@limiter.limit("40/minute")
def check_availability(
    request: Request,
    room_id: str,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    admission: BookingAdmissionEngine = Depends(get_admission_engine),
) -> AvailabilityRead:
    return AvailabilityRead(room_id=room_id, available=admission.check_availability(room_id, start_time, end_time))


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    current_profile: Profile = Depends(get_current_profile),
    admission: BookingAdmissionEngine = Depends(get_admission_engine),
) -> BookingRead:
    user_unit = booking_in.user_unit or current_profile.assigned_room
    user_company_name = booking_in.user_company_name or current_profile.company_name
    if not user_unit or not user_company_name:
        raise MissingBookingDetails()
    booking = admission.admit(
        BookingRequest(
            owner_id=current_profile.id,
            room_id=booking_in.room_id,
            start_time=booking_in.start_time,
            end_time=booking_in.end_time,
            title=booking_in.title,
            requirements=booking_in.requirements,
            user_unit=user_unit,
            user_company_name=user_company_name,
        )
    )
    return BookingRead.model_validate(booking).model_copy(update={"booked_by": current_profile.full_name})


@app.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
def delete_booking(
    request: Request,
    booking_id: int,
    caller: Caller = Depends(get_caller),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db),
) -> None:
    cancel_booking(db, booking_id, caller, settings=settings, clock=clock)


@app.get("/quota/me", response_model=QuotaRead)
@limiter.limit("60/minute")
def my_quota(
    request: Request,
    current_profile: Profile = Depends(get_current_profile),
    quota: QuotaService = Depends(get_quota_service),
) -> QuotaRead:
    return QuotaRead.model_validate(quota.usage(current_profile.id))


@app.get("/admin/quotas", response_model=List[QuotaRead])
@limiter.limit("30/minute")
def quota_overview(
    request: Request,
    search: Optional[str] = None,
    sort_by: Literal["usage", "name"] = "usage",
    _: Profile = Depends(require_admin),
    quota: QuotaService = Depends(get_quota_service),
) -> List[QuotaRead]:
    return [QuotaRead.model_validate(row) for row in quota.overview(search=search, sort_by=sort_by)]


@app.get("/admin/quotas/{user_id}", response_model=QuotaRead)
@limiter.limit("30/minute")
def user_quota(
    request: Request,
    user_id: int,
    _: Profile = Depends(require_admin),
    quota: QuotaService = Depends(get_quota_service),
) -> QuotaRead:
    return QuotaRead.model_validate(quota.usage(user_id))


@app.get("/admin/bookings", response_model=List[BookingRead])
@limiter.limit("30/minute")
def admin_bookings(
    request: Request,
    past: bool = False,
    search: Optional[str] = None,
    _: Profile = Depends(require_admin),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db),
) -> List[BookingRead]:
    now = clock()
    query = db.query(Booking, Profile.full_name).join(Profile, Booking.user_id == Profile.id)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(
            or_(
                func.lower(Profile.full_name).like(pattern),
                func.lower(Booking.user_company_name).like(pattern),
                func.lower(Booking.room_id).like(pattern),
            )
        )
    if past:
        query = query.filter(Booking.start_time < now).order_by(Booking.start_time.desc())
    else:
        query = query.filter(Booking.start_time >= now).order_by(Booking.start_time)
    return _booking_rows(query.limit(50))
