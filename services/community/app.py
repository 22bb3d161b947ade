import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import func
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from common import notifications
from common.cache import directory_cache
from common.config import get_settings
from common.database import Base, engine, get_db
from common.dependencies import get_current_profile, oauth_scheme, require_admin, resolve_profile_id
from common.errors import register_error_handlers
from common.events import ANNOUNCEMENT_CREATED, NOTIFICATION_CREATED, AsyncSubscription, change_feed
from common.logging_middleware import add_audit_middleware
from common.models import Announcement, Profile
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import AnnouncementCreate, AnnouncementRead, DirectoryEntry, NotificationList, NotificationRead

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Community Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "community")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "community"}


def _directory_key(db: Session) -> str:
    """Cache key that changes whenever any process adds, edits or removes a profile."""

    count, latest = db.query(func.count(Profile.id), func.max(Profile.updated_at)).one()
    return f"directory:{count}:{latest.isoformat() if latest else '-'}"


@app.get("/directory", response_model=List[DirectoryEntry])
@limiter.limit("60/minute")
def member_directory(
    request: Request,
    search: Optional[str] = None,
    _: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> List[dict]:
    def load() -> List[dict]:
        profiles = db.query(Profile).order_by(Profile.full_name).all()
        return [DirectoryEntry.model_validate(profile).model_dump() for profile in profiles]

    entries = directory_cache.get_or_set(_directory_key(db), load)
    if not search:
        return entries
    term = search.lower()
    return [
        entry
        for entry in entries
        if term in entry["full_name"].lower() or term in (entry["company_name"] or "").lower()
    ]


@app.get("/announcements", response_model=List[AnnouncementRead])
@limiter.limit("60/minute")
def list_announcements(
    request: Request,
    _: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> List[Announcement]:
    return db.query(Announcement).order_by(Announcement.created_at.desc(), Announcement.id.desc()).all()


@app.post("/announcements", response_model=AnnouncementRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_announcement(
    request: Request,
    announcement_in: AnnouncementCreate,
    current_profile: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Announcement:
    announcement = Announcement(author_id=current_profile.id, **announcement_in.model_dump())
    db.add(announcement)
    db.commit()
    db.refresh(announcement)
    notifications.notify_announcement(db, announcement)
    db.refresh(announcement)
    return announcement


@app.delete("/announcements/{announcement_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_announcement(
    request: Request,
    announcement_id: int,
    _: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> None:
    announcement = db.get(Announcement, announcement_id)
    if not announcement:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Announcement not found")
    db.delete(announcement)
    db.commit()


@app.get("/notifications", response_model=NotificationList)
@limiter.limit("60/minute")
def list_notifications(
    request: Request,
    current_profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> NotificationList:
    latest = notifications.latest_for(db, current_profile.id)
    return NotificationList(
        unread_count=notifications.unread_count(db, current_profile.id),
        notifications=[NotificationRead.model_validate(item) for item in latest],
    )


@app.post("/notifications/read-all")
@limiter.limit("30/minute")
def read_all_notifications(
    request: Request,
    current_profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> dict[str, int]:
    return {"updated": notifications.mark_all_read(db, current_profile.id)}


@app.post("/notifications/{notification_id}/read", response_model=NotificationRead)
@limiter.limit("60/minute")
def read_notification(
    request: Request,
    notification_id: int,
    current_profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    notification = notifications.mark_read(db, current_profile.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification


async def notification_frames(
    request: Request, subscription: AsyncSubscription, keepalive: float
) -> AsyncIterator[str]:
    """Render feed events as SSE frames until the client leaves or the subscription closes."""

    try:
        while not await request.is_disconnected():
            event = await subscription.next(keepalive)
            if event is None:
                if subscription.closed:
                    break
                yield ": keepalive\n\n"
                continue
            yield f"event: {event.type}\ndata: {json.dumps(event.to_message(), default=str)}\n\n"
    finally:
        subscription.close()


@app.get("/notifications/stream")
async def notification_stream(request: Request, token: str = Depends(oauth_scheme)) -> StreamingResponse:
    """Server-Sent Events carrying the caller's new notifications and announcements."""

    # The stream outlives any request-scoped session, so the caller is checked on its own.
    profile_id = await run_in_threadpool(resolve_profile_id, token)
    subscription = change_feed.subscribe_async([NOTIFICATION_CREATED, ANNOUNCEMENT_CREATED], user_id=profile_id)
    return StreamingResponse(
        notification_frames(request, subscription, settings.stream_keepalive_seconds),
        media_type="text/event-stream",
    )
