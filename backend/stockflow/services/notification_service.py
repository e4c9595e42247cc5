# Overview: Operator notifications; persists published stock events and manages them.

from __future__ import annotations

from ..extensions import db
from ..errors import NotFound
from ..models import Notification
from .events import StockEvent
from .operator_service import require_operator


def store_notification(event: StockEvent) -> Notification:
    """
    Event subscriber: keep one Notification per published event.

    Runs after the stock write has committed, in its own commit. A failure
    here is rolled back and re-raised to the event bus, which logs it.
    """
    notification = Notification(
        operator_id=event.operator_id,
        event_type=event.event_type,
        kind=event.kind,
        title=event.title[:128],
        message=event.message[:512],
        product_id=event.product_id,
        quantity=event.quantity,
        is_read=False,
    )
    try:
        db.session.add(notification)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return notification


def list_notifications(*, operator_id: int, unread_only: bool = False, limit: int = 100) -> list[Notification]:
    require_operator(operator_id)
    q = db.session.query(Notification).filter(Notification.operator_id == operator_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(*, operator_id: int) -> int:
    return (
        db.session.query(Notification)
        .filter(Notification.operator_id == operator_id, Notification.is_read.is_(False))
        .count()
    )


def _get(operator_id: int, notification_id: int) -> Notification:
    notification = db.session.get(Notification, notification_id)
    if notification is None or notification.operator_id != operator_id:
        raise NotFound(
            f"notification {notification_id} not found",
            details={"notification_id": notification_id},
        )
    return notification


def mark_read(*, operator_id: int, notification_id: int) -> Notification:
    require_operator(operator_id)
    notification = _get(operator_id, notification_id)
    notification.is_read = True
    db.session.commit()
    return notification


def mark_all_read(*, operator_id: int) -> int:
    require_operator(operator_id)
    count = (
        db.session.query(Notification)
        .filter(Notification.operator_id == operator_id, Notification.is_read.is_(False))
        .update({"is_read": True}, synchronize_session=False)
    )
    db.session.commit()
    return count


def remove_notification(*, operator_id: int, notification_id: int) -> None:
    require_operator(operator_id)
    db.session.delete(_get(operator_id, notification_id))
    db.session.commit()


def clear_notifications(*, operator_id: int) -> int:
    require_operator(operator_id)
    count = (
        db.session.query(Notification)
        .filter(Notification.operator_id == operator_id)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return count
