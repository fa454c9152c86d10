"""Blueprint registration and public community endpoints."""
from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from utils.ledger import list_recent_transactions
from utils.notifications import list_unread
from utils.report_lifecycle import impact_summary, recent_reports
from utils.rewards import reward_summary
from .auth import auth_bp
from .notifications import notifications_bp
from .reports import reports_bp
from .rewards import rewards_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/", methods=["GET"])
def home():
    return jsonify(
        {
            "impact": impact_summary(),
            "recent_reports": [r.public_payload() for r in recent_reports(5)],
        }
    )


@main_bp.route("/healthz", methods=["GET"])
def healthz():
    return jsonify({"status": "ok"})


@main_bp.route("/dashboard", methods=["GET"])
@login_required
def dashboard():
    return jsonify(
        {
            "user": current_user.public_payload(),
            "rewards": reward_summary(current_user.id),
            "transactions": [t.public_payload() for t in list_recent_transactions(current_user.id, 5)],
            "unread_notifications": len(list_unread(current_user.id)),
        }
    )


__all__ = ["main_bp", "auth_bp", "reports_bp", "rewards_bp", "notifications_bp"]
