"""User-facing notification mailbox fed by ledger and lifecycle events."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import NOTIFICATION_TYPES, Notification
from utils.errors import StoreError, ValidationError


def emit_notification(user_id: str, message: str, notification_type: str = "system") -> Notification:
    """Queue an unread notification in the current unit of work (the caller commits)."""
    if notification_type not in NOTIFICATION_TYPES:
        raise ValidationError("Invalid notification type")
    if not message:
        raise ValidationError("Notification message is required")
    notification = Notification(user_id=user_id, message=message[:500], type=notification_type)
    try:
        db.session.add(notification)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Notification write failed", extra={"user_id": user_id})
        raise StoreError("Could not create notification") from exc
    current_app.logger.info("Notification emitted", extra={"user_id": user_id, "type": notification_type})
    return notification


def mark_read(notification_id, user_id: Optional[str] = None) -> Optional[Notification]:
    """Flip the read flag. Safe to repeat; returns None for unknown (or foreign) notifications."""
    notification = db.session.get(Notification, notification_id)
    if not notification:
        return None
    if user_id is not None and notification.user_id != user_id:
        return None
    if notification.is_read:
        return notification
    notification.is_read = True
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Marking notification read failed", extra={"notification_id": notification_id})
        raise StoreError("Could not update notification") from exc
    return notification


def mark_all_read(user_id: str) -> int:
    try:
        updated = (
            Notification.query.filter_by(user_id=user_id, is_read=False)
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Marking notifications read failed", extra={"user_id": user_id})
        raise StoreError("Could not update notifications") from exc
    return updated


def list_unread(user_id: str) -> List[Notification]:
    try:
        return (
            Notification.query.filter_by(user_id=user_id, is_read=False)
            .order_by(Notification.created_at.asc(), Notification.id.asc())
            .all()
        )
    except SQLAlchemyError:
        current_app.logger.exception("Fetching unread notifications failed", extra={"user_id": user_id})
        return []
