from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from common import auth
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_profile, require_admin
from common.errors import ProfileNotFound, register_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Profile
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import ProfileCreate, ProfileRead, ProfileUpdate, QuotaUpdate, Token

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Users Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "users")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def _get_profile_or_404(db: Session, profile_id: int) -> Profile:
    profile = db.get(Profile, profile_id)
    if not profile:
        raise ProfileNotFound()
    return profile


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "users"}


@app.post("/users/register", response_model=ProfileRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register(request: Request, profile_in: ProfileCreate, db: Session = Depends(get_db)) -> Profile:
    if db.query(Profile).filter(Profile.email == profile_in.email).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")

    # The first member to sign up bootstraps the administration.
    first_member = db.query(Profile.id).first() is None
    profile = Profile(
        email=profile_in.email,
        hashed_password=auth.get_password_hash(profile_in.password),
        full_name=profile_in.full_name,
        assigned_room=profile_in.assigned_room,
        company_name=profile_in.company_name,
        is_admin=first_member,
        is_approved=first_member,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@app.post("/users/login", response_model=Token)
@limiter.limit("10/minute")
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    profile = auth.authenticate_profile(db, form_data.username, form_data.password)
    if not profile:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")
    return Token(access_token=auth.token_for(profile))


@app.get("/users/me", response_model=ProfileRead)
def read_me(current_profile: Profile = Depends(get_current_profile)) -> Profile:
    return current_profile


@app.put("/users/me", response_model=ProfileRead)
@limiter.limit("10/minute")
def update_me(
    request: Request,
    profile_update: ProfileUpdate,
    current_profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> Profile:
    for key, value in profile_update.model_dump(exclude_unset=True).items():
        setattr(current_profile, key, value)
    db.commit()
    db.refresh(current_profile)
    return current_profile


@app.get("/admin/users", response_model=list[ProfileRead])
@limiter.limit("20/minute")
def list_profiles(request: Request, _: Profile = Depends(require_admin), db: Session = Depends(get_db)) -> list[Profile]:
    return db.query(Profile).order_by(Profile.full_name).all()


@app.post("/admin/users/{profile_id}/approval", response_model=ProfileRead)
@limiter.limit("20/minute")
def toggle_approval(
    request: Request,
    profile_id: int,
    _: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Profile:
    profile = _get_profile_or_404(db, profile_id)
    profile.is_approved = not profile.is_approved
    db.commit()
    db.refresh(profile)
    return profile


@app.post("/admin/users/{profile_id}/admin", response_model=ProfileRead)
@limiter.limit("10/minute")
def toggle_admin(
    request: Request,
    profile_id: int,
    current_profile: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Profile:
    profile = _get_profile_or_404(db, profile_id)
    if profile.id == current_profile.id and profile.is_admin:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot remove your own admin status")
    profile.is_admin = not profile.is_admin
    db.commit()
    db.refresh(profile)
    return profile


@app.put("/admin/users/{profile_id}/quota", response_model=ProfileRead)
@limiter.limit("20/minute")
def set_quota(
    request: Request,
    profile_id: int,
    quota_update: QuotaUpdate,
    _: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Profile:
    profile = _get_profile_or_404(db, profile_id)
    profile.monthly_hours_quota = quota_update.monthly_hours_quota
    db.commit()
    db.refresh(profile)
    return profile


@app.delete("/admin/users/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("5/minute")
def delete_profile(
    request: Request,
    profile_id: int,
    current_profile: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> None:
    if profile_id == current_profile.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot delete your own account")
    profile = _get_profile_or_404(db, profile_id)
    db.delete(profile)
    db.commit()
