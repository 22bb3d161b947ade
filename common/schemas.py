"""Pydantic schemas shared across the services."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator

UNIT_PATTERN = r"^(0[1-9]|1[0-2])$"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Stored timestamps are naive UTC; responses carry the offset explicitly.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ProfileCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=150)
    email: EmailStr
    password: str = Field(..., min_length=8)
    assigned_room: Optional[str] = Field(None, pattern=UNIT_PATTERN)
    company_name: Optional[str] = Field(None, max_length=150)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.lower()


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=150)
    company_name: Optional[str] = Field(None, max_length=150)
    assigned_room: Optional[str] = Field(None, pattern=UNIT_PATTERN)
    bio: Optional[str] = Field(None, max_length=2000)
    photo_url: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = Field(None, max_length=40)


class DirectoryEntry(BaseModel):
    id: int
    full_name: str
    company_name: Optional[str] = None
    assigned_room: Optional[str] = None
    bio: Optional[str] = None
    photo_url: Optional[str] = None
    phone: Optional[str] = None

    model_config = {"from_attributes": True}


class ProfileRead(DirectoryEntry):
    email: EmailStr
    monthly_hours_quota: Optional[float] = None
    is_admin: bool
    is_approved: bool
    created_at: UtcDatetime


class QuotaUpdate(BaseModel):
    monthly_hours_quota: float = Field(..., gt=0, le=744)


class BookingCreate(BaseModel):
    room_id: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=200)
    start_time: datetime
    end_time: datetime
    requirements: Optional[str] = Field(None, max_length=2000)
    user_unit: Optional[str] = Field(None, max_length=20)
    user_company_name: Optional[str] = Field(None, max_length=150)


class BookingRead(BaseModel):
    id: int
    room_id: str
    user_id: int
    title: str
    requirements: Optional[str] = None
    start_time: UtcDatetime
    end_time: UtcDatetime
    user_unit: Optional[str] = None
    user_company_name: Optional[str] = None
    created_at: UtcDatetime
    booked_by: Optional[str] = None

    model_config = {"from_attributes": True}


class AvailabilityRead(BaseModel):
    room_id: str
    available: bool


class QuotaRead(BaseModel):
    user_id: int
    quota_hours: float
    used_hours: float
    remaining_hours: float
    percentage: float
    month_start: UtcDatetime
    month_end: UtcDatetime
    full_name: Optional[str] = None
    company_name: Optional[str] = None
    assigned_room: Optional[str] = None

    model_config = {"from_attributes": True}


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=5000)


class AnnouncementRead(AnnouncementCreate):
    id: int
    author_id: Optional[int] = None
    created_at: UtcDatetime

    model_config = {"from_attributes": True}


class NotificationRead(BaseModel):
    id: int
    type: str
    title: str
    message: str
    reference_id: Optional[str] = None
    is_read: bool
    created_at: UtcDatetime

    model_config = {"from_attributes": True}


class NotificationList(BaseModel):
    unread_count: int
    notifications: List[NotificationRead]
