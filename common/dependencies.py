"""Reusable FastAPI dependencies for auth and database access."""
from datetime import datetime
from typing import Any, Callable, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .auth import decode_token
from .cancellation import Caller
from .database import SessionLocal, get_db
from .models import Profile
from .timeutils import utcnow

oauth_scheme = OAuth2PasswordBearer(tokenUrl="/users/login")


def _subject_id(payload: Dict[str, Any]) -> int:
    subject = payload.get("sub")
    if subject is None or not str(subject).isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing subject in token")
    return int(subject)


def get_current_profile(token: str = Depends(oauth_scheme), db: Session = Depends(get_db)) -> Profile:
    profile = db.get(Profile, _subject_id(decode_token(token)))
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile


def resolve_profile_id(token: str) -> int:
    """Check the token's profile on a short-lived session and return its id.

    For long-lived responses that must not keep a pooled connection checked out.
    """

    profile_id = _subject_id(decode_token(token))
    db = SessionLocal()
    try:
        exists = db.get(Profile, profile_id) is not None
    finally:
        db.close()
    if not exists:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile_id


def require_admin(current_profile: Profile = Depends(get_current_profile)) -> Profile:
    if not current_profile.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admins only")
    return current_profile


def get_caller(current_profile: Profile = Depends(get_current_profile)) -> Caller:
    return Caller(user_id=current_profile.id, is_admin=current_profile.is_admin)


def get_clock() -> Callable[[], datetime]:
    """Wall clock used by time-dependent rules; overridden in tests."""

    return utcnow
