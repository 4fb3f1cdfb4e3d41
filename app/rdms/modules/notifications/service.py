from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.rdms.errors import NotFoundError, ValidationError

from .models import NOTIFICATION_TYPES, Notification

logger = logging.getLogger(__name__)


def create_notification(
    s: Session,
    *,
    user_id: int,
    type: str,
    title: str,
    message: str,
    link: str | None = None,
    change_request_id: int | None = None,
    qc_approval_id: int | None = None,
    item_history_id: int | None = None,
) -> Notification:
    if type not in NOTIFICATION_TYPES:
        raise ValidationError(f"Invalid notification type: {type}")
    n = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        link=link,
        change_request_id=change_request_id,
        qc_approval_id=qc_approval_id,
        item_history_id=item_history_id,
    )
    s.add(n)
    s.flush()
    return n


def notify(s: Session, *, user_id: int | None, **fields: Any) -> Notification | None:
    """
    Fire-and-forget delivery: failures are logged and never propagate.
    Runs in a SAVEPOINT so a failed insert leaves the caller's transaction usable.
    """
    if not user_id:
        return None
    try:
        with s.begin_nested():
            return create_notification(s, user_id=user_id, **fields)
    except Exception:
        logger.exception("Failed to deliver notification (user_id=%s type=%s)", user_id, fields.get("type"))
        return None


def list_notifications(s: Session, user_id: int, *, limit: int = 20) -> list[Notification]:
    return list(
        s.scalars(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
    )


def unread_count(s: Session, user_id: int) -> int:
    return int(
        s.scalar(
            select(func.count(Notification.id)).where(Notification.user_id == user_id, Notification.is_read.is_(False))
        )
        or 0
    )


def mark_read(s: Session, notification_id: int, user_id: int) -> Notification:
    n = s.get(Notification, notification_id)
    if not n or n.user_id != user_id:
        raise NotFoundError("Notification not found")
    n.is_read = True
    return n


def mark_all_read(s: Session, user_id: int) -> int:
    res = s.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    return res.rowcount or 0


def mark_change_request_read(s: Session, user_id: int, change_request_id: int) -> int:
    res = s.execute(
        update(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.change_request_id == change_request_id,
            Notification.is_read.is_(False),
        )
        .values(is_read=True)
    )
    return res.rowcount or 0


def notification_to_dict(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "link": n.link,
        "change_request_id": n.change_request_id,
        "qc_approval_id": n.qc_approval_id,
        "item_history_id": n.item_history_id,
        "is_read": n.is_read,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }
