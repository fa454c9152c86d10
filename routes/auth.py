"""Identity-provider sign-in callback and session endpoints."""
import hmac
from datetime import datetime

from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from wtforms import StringField
from wtforms.validators import DataRequired, Email, Length, Optional

from extensions import db
from models import User
from routes.forms import first_form_error
from utils.errors import ValidationError
from utils.rewards import get_or_create_reward

auth_bp = Blueprint("auth", __name__)


class IdentityForm(FlaskForm):
    class Meta:
        csrf = False

    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    name = StringField("Name", validators=[Optional(), Length(max=255)])


def _identity_secret_ok() -> bool:
    expected = current_app.config.get("IDENTITY_CALLBACK_SECRET") or ""
    if not expected:
        return True
    supplied = request.headers.get("X-Identity-Secret", "")
    return hmac.compare_digest(expected, supplied)


@auth_bp.route("/session", methods=["POST"])
def sign_in():
    """Accept a verified identity from the provider and find-or-create the matching user."""
    if not _identity_secret_ok():
        current_app.logger.warning("Identity callback rejected", extra={"remote_addr": request.remote_addr})
        abort(403)
    form = IdentityForm()
    if not form.validate_on_submit():
        raise ValidationError(first_form_error(form))

    user = User.get_or_create(form.email.data, form.name.data)
    get_or_create_reward(user.id)
    user.last_login_at = datetime.utcnow()
    db.session.commit()
    login_user(user, remember=True)
    current_app.logger.info("User signed in", extra={"user_id": user.id})
    return jsonify(user.public_payload())


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"status": "signed_out"})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify(current_user.public_payload())
