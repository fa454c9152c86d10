"""Balance, ledger history and redemption blueprint."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from wtforms import IntegerField
from wtforms.validators import NumberRange, Optional

from routes.forms import first_form_error
from utils.errors import ValidationError
from utils.ledger import list_recent_transactions
from utils.rewards import list_available_rewards, redeem_reward, reward_summary

rewards_bp = Blueprint("rewards", __name__, url_prefix="/rewards")


class RedeemForm(FlaskForm):
    class Meta:
        csrf = False

    reward_id = IntegerField("Reward", validators=[Optional(), NumberRange(min=0)])


@rewards_bp.route("/balance", methods=["GET"])
@login_required
def balance():
    summary = reward_summary(current_user.id)
    summary["poll_interval"] = int(current_app.config.get("NOTIFICATION_POLL_SECONDS", 30))
    return jsonify(summary)


@rewards_bp.route("/transactions", methods=["GET"])
@login_required
def transactions():
    default_limit = int(current_app.config.get("RECENT_TRANSACTIONS_LIMIT", 10))
    try:
        limit = int(request.args.get("limit", default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    limit = max(1, min(limit, 100))
    return jsonify([t.public_payload() for t in list_recent_transactions(current_user.id, limit)])


@rewards_bp.route("", methods=["GET"])
@login_required
def catalog():
    return jsonify(list_available_rewards(current_user.id))


@rewards_bp.route("/redeem", methods=["POST"])
@login_required
def redeem():
    form = RedeemForm()
    if not form.validate_on_submit():
        raise ValidationError(first_form_error(form))
    result = redeem_reward(current_user.id, form.reward_id.data)
    return jsonify(result)
