"""Polling feed for user notifications."""
from flask import Blueprint, abort, current_app, jsonify
from flask_login import current_user, login_required

from utils.notifications import list_unread, mark_all_read, mark_read

notifications_bp = Blueprint("notifications", __name__, url_prefix="/notifications")


@notifications_bp.route("", methods=["GET"])
@login_required
def unread_feed():
    items = list_unread(current_user.id)
    return jsonify(
        {
            "notifications": [n.public_payload() for n in items],
            "unread_count": len(items),
            "poll_interval": int(current_app.config.get("NOTIFICATION_POLL_SECONDS", 30)),
        }
    )


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@login_required
def read_notification(notification_id):
    notification = mark_read(notification_id, user_id=current_user.id)
    if notification is None:
        abort(404)
    return jsonify(notification.public_payload())


@notifications_bp.route("/read-all", methods=["POST"])
@login_required
def read_all():
    return jsonify({"updated": mark_all_read(current_user.id)})
