"""Waste report intake, collection tasks and AI-assisted verification blueprint."""
from flask import Blueprint, current_app, jsonify, request, send_from_directory, url_for
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from flask_wtf.file import FileAllowed, FileField, FileRequired
from wtforms import StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional

from routes.forms import first_form_error
from utils.ai_vision import get_vision
from utils.errors import ValidationError
from utils.image_utils import ALLOWED_IMAGE_EXTENSIONS, persist_image
from utils.report_lifecycle import (
    claim_report,
    collection_tasks,
    create_report,
    recent_reports,
    submit_verification,
)

reports_bp = Blueprint("reports", __name__)


class ImageUploadForm(FlaskForm):
    class Meta:
        csrf = False

    image = FileField(
        "Waste photo (jpg, png, webp)",
        validators=[FileRequired(), FileAllowed(list(ALLOWED_IMAGE_EXTENSIONS), "Images only")],
    )


class ReportForm(FlaskForm):
    class Meta:
        csrf = False

    location = StringField("Location", validators=[DataRequired(), Length(max=2000)])
    waste_type = StringField("Waste type", validators=[DataRequired(), Length(max=255)])
    amount = StringField("Estimated amount", validators=[DataRequired(), Length(max=255)])
    image_url = StringField("Image URL", validators=[Optional(), Length(max=2000)])
    verification_result = TextAreaField("Analysis result", validators=[Optional(), Length(max=5000)])


def _store_upload(form: ImageUploadForm) -> dict:
    upload_dir = current_app.config.get("UPLOAD_FOLDER")
    max_bytes = int(current_app.config.get("MAX_IMAGE_UPLOAD_BYTES", 8 * 1024 * 1024))
    try:
        return persist_image(form.image.data, upload_dir, max_bytes=max_bytes)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _limit_arg(default: int, ceiling: int = 100) -> int:
    try:
        value = int(request.args.get("limit", default))
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, ceiling))


@reports_bp.route("/uploads/<path:filename>", methods=["GET"])
def uploaded_image(filename):
    return send_from_directory(current_app.config["UPLOAD_FOLDER"], filename)


@reports_bp.route("/reports/analyze", methods=["POST"])
@login_required
def analyze_report_image():
    form = ImageUploadForm()
    if not form.validate_on_submit():
        raise ValidationError(first_form_error(form))
    stored = _store_upload(form)
    analysis = get_vision(current_app).analyze(stored["bytes"], stored["mime_type"])
    current_app.logger.info("Waste image analysed", extra={"user_id": current_user.id, **analysis.to_dict()})
    return jsonify(
        {
            "analysis": analysis.to_dict(),
            "image_url": url_for("reports.uploaded_image", filename=stored["file_name"]),
        }
    )


@reports_bp.route("/reports", methods=["POST"])
@login_required
def submit_report():
    form = ReportForm()
    if not form.validate_on_submit():
        raise ValidationError(first_form_error(form))
    report = create_report(
        current_user.id,
        form.location.data,
        form.waste_type.data,
        form.amount.data,
        image_url=form.image_url.data or None,
        verification_result=form.verification_result.data or None,
    )
    return jsonify(report.public_payload()), 201


@reports_bp.route("/reports/recent", methods=["GET"])
def list_recent_reports():
    return jsonify([r.public_payload() for r in recent_reports(_limit_arg(10))])


@reports_bp.route("/reports/tasks", methods=["GET"])
@login_required
def list_collection_tasks():
    tasks = collection_tasks(_limit_arg(20), status=request.args.get("status") or None)
    return jsonify([t.public_payload() for t in tasks])


@reports_bp.route("/reports/<int:report_id>/claim", methods=["POST"])
@login_required
def claim_task(report_id):
    report = claim_report(report_id, current_user.id)
    return jsonify(report.public_payload())


@reports_bp.route("/reports/<int:report_id>/verify", methods=["POST"])
@login_required
def verify_collection(report_id):
    form = ImageUploadForm()
    if not form.validate_on_submit():
        raise ValidationError(first_form_error(form))
    stored = _store_upload(form)
    outcome = submit_verification(
        report_id,
        current_user.id,
        stored["bytes"],
        stored["mime_type"],
        get_vision(current_app),
    )
    return jsonify(outcome.to_dict())
