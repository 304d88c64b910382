"""
Notification Store: per-user typed alerts with unread tracking.

Producers (order, payment and chat pipelines) create notifications; users
only ever acknowledge them. Every operation commits before returning so a
listing issued right after a read reflects it.
"""

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketchat.channels import broker, notification_channel
from marketchat.config import settings
from marketchat.errors import NotificationNotFound
from marketchat.metrics import record_notification_created
from marketchat.models import Notification, NotificationType
from marketchat.schemas import LiveEvent, NotificationResponse
from marketchat.storage import translate_store_errors, utc_now

logger = logging.getLogger(__name__)


def create_notification(
    db: Session,
    user_id: str,
    notification_type: NotificationType,
    title: str,
    body: str,
    link: Optional[str] = None,
) -> Notification:
    logger.info(f"Creating {notification_type.value} notification for user={user_id}")

    with translate_store_errors(db):
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            body=body,
            link=link,
            is_read=False,
            created_at=utc_now(),
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)

    record_notification_created(notification_type.value)
    event = LiveEvent(
        type="notification.created",
        data=NotificationResponse.model_validate(notification).model_dump(mode="json"),
    )
    broker.publish(notification_channel(user_id), event.model_dump(mode="json"))
    return notification


def list_unread_notifications(db: Session, user_id: str, limit: Optional[int] = None) -> list[Notification]:
    """Unread notifications, most recent first, at most `limit` (page size by default)."""
    if limit is None:
        limit = settings.NOTIFICATION_PAGE_SIZE
    with translate_store_errors(db):
        notifications = list(
            db.execute(
                select(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
            ).scalars()
        )
    logger.debug(f"Listed {len(notifications)} unread notifications for user={user_id}")
    return notifications


def count_unread_notifications(db: Session, user_id: str) -> int:
    with translate_store_errors(db):
        return db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        ).scalar() or 0


def mark_notification_read(db: Session, notification_id: str) -> bool:
    """
    Acknowledge one notification.

    Returns:
        True if this call flipped it, False if it was already read

    Raises:
        NotificationNotFound: unknown id
    """
    with translate_store_errors(db):
        notification = db.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFound(notification_id)
        if notification.is_read:
            return False
        notification.is_read = True
        db.commit()
    logger.info(f"Notification marked read: {notification_id}")
    return True


def mark_all_notifications_read(db: Session, user_id: str) -> int:
    with translate_store_errors(db):
        result = db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        db.commit()
    logger.info(f"Marked {result.rowcount} notifications read for user={user_id}")
    return result.rowcount
