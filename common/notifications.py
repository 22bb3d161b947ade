"""Per-member notifications raised by community activity."""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .events import ANNOUNCEMENT_CREATED, NOTIFICATION_CREATED, ChangeFeed, change_feed
from .models import Announcement, Notification, Profile

NEW_ANNOUNCEMENT = "new_announcement"


def notify_announcement(db: Session, announcement: Announcement, feed: Optional[ChangeFeed] = change_feed) -> List[Notification]:
    """Insert one notification per member except the author, then publish them."""

    recipients = [row.id for row in db.query(Profile.id).filter(Profile.id != announcement.author_id)]
    notifications = [
        Notification(
            user_id=user_id,
            type=NEW_ANNOUNCEMENT,
            title=announcement.title,
            message=announcement.content[:280],
            reference_id=str(announcement.id),
        )
        for user_id in recipients
    ]
    db.add_all(notifications)
    db.commit()

    if feed is not None:
        feed.publish(ANNOUNCEMENT_CREATED, announcement.id, {"title": announcement.title})
        for notification in notifications:
            feed.publish(
                NOTIFICATION_CREATED,
                notification.id,
                {
                    "type": notification.type,
                    "title": notification.title,
                    "message": notification.message,
                    "reference_id": notification.reference_id,
                },
                user_id=notification.user_id,
            )
    return notifications


def latest_for(db: Session, user_id: int, limit: int = 30) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )


def unread_count(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .scalar()
    )


def mark_read(db: Session, user_id: int, notification_id: int) -> Optional[Notification]:
    """Mark one notification as read. Repeating the call changes nothing."""

    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        return None
    if not notification.is_read:
        notification.is_read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: int) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return updated
