"""Waste report lifecycle: pending -> in_progress -> verified.

Every transition that two actors could race on is a conditional UPDATE
checked by row count, and each transition commits its status change,
ledger entry, reward increment and notification as a single unit.
"""
from __future__ import annotations

import json
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import bleach
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import REPORT_STATUSES, CollectedWaste, Report, Transaction
from utils.ai_vision import WasteVerification
from utils.errors import (
    InvalidTransitionError,
    RaceConditionError,
    RecordNotFoundError,
    StoreError,
    ValidationError,
    VerificationError,
)
from utils.notifications import emit_notification
from utils.rewards import award_points


@dataclass
class VerificationOutcome:
    verified: bool
    report: Report
    verification: WasteVerification
    reward: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "report": self.report.public_payload(),
            "verification": self.verification.to_dict(),
            "reward": self.reward,
        }


def _clean(value: Any, field: str, max_length: int = 2000) -> str:
    text = bleach.clean(str(value or ""), tags=[], strip=True).strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text[:max_length]


def normalize_verification_payload(raw: Any) -> Optional[Dict[str, Any]]:
    """Keep an analysis payload only when it has a type, a quantity and a numeric confidence."""
    if raw in (None, ""):
        return None
    payload = raw
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            current_app.logger.warning("Discarding non-JSON verification payload")
            return None
    if not isinstance(payload, dict):
        return None
    waste_type = payload.get("waste_type") or payload.get("wasteType")
    quantity = payload.get("quantity")
    confidence = payload.get("confidence")
    if not waste_type or not quantity or isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        current_app.logger.warning("Discarding incomplete verification payload")
        return None
    return {"waste_type": str(waste_type), "quantity": str(quantity), "confidence": float(confidence)}


def is_accepted(verification: WasteVerification, threshold: float) -> bool:
    return verification.type_match and verification.quantity_match and verification.confidence > threshold


def create_report(
    reporter_id: str,
    location: str,
    waste_type: str,
    amount: str,
    image_url: Optional[str] = None,
    verification_result: Any = None,
) -> Report:
    if not reporter_id:
        raise ValidationError("Reporter is required")
    report = Report(
        reporter_id=reporter_id,
        location=_clean(location, "location"),
        waste_type=_clean(waste_type, "waste_type", 255),
        amount=_clean(amount, "amount", 255),
        image_url=(image_url or None),
        verification_result=normalize_verification_payload(verification_result),
        status="pending",
    )
    points = int(current_app.config.get("REPORT_REWARD_POINTS", 10))
    try:
        db.session.add(report)
        db.session.flush()
        award_points(
            reporter_id,
            "earned_report",
            points,
            "Points earned for reporting waste",
            reference=f"report:{report.id}:report",
        )
        emit_notification(reporter_id, f"You've earned {points} points for reporting waste!", "reward")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Report creation failed", extra={"reporter_id": reporter_id})
        raise StoreError("Could not save the report") from exc
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Report created", extra={"report_id": report.id, "reporter_id": reporter_id, "points": points})
    return report


def claim_report(report_id: int, collector_id: str) -> Report:
    """Attach a collector to a pending report. Exactly one concurrent claimer wins."""
    if not collector_id:
        raise ValidationError("Collector is required")
    try:
        updated = (
            Report.query.filter(
                Report.id == report_id,
                Report.status == "pending",
                Report.collector_id.is_(None),
            )
            .update(
                {
                    Report.status: "in_progress",
                    Report.collector_id: collector_id,
                    Report.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.session.rollback()
            current = db.session.get(Report, report_id)
            if current is None:
                raise RecordNotFoundError("Report not found")
            if current.status != "in_progress":
                raise InvalidTransitionError(f"Report is {current.status}; only pending reports can be claimed")
            current_app.logger.warning("Claim lost", extra={"report_id": report_id, "collector_id": collector_id})
            raise RaceConditionError("This task has already been claimed")
        emit_notification(collector_id, f"You claimed collection task #{report_id}.", "task")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Claim failed", extra={"report_id": report_id})
        raise StoreError("Could not claim the task") from exc

    report = db.session.get(Report, report_id)
    db.session.refresh(report)
    current_app.logger.info("Report claimed", extra={"report_id": report_id, "collector_id": collector_id})
    return report


def _held_report(report_id: int, collector_id: str) -> Report:
    report = db.session.get(Report, report_id)
    if report is None:
        raise RecordNotFoundError("Report not found")
    if report.status != "in_progress":
        raise InvalidTransitionError(f"Report is {report.status}; only in-progress tasks can be verified")
    if report.collector_id != collector_id:
        raise InvalidTransitionError("This task is assigned to another collector")
    return report


def submit_verification(
    report_id: int,
    collector_id: str,
    image_bytes: bytes,
    mime_type: str,
    verifier,
    rng: Optional[random.Random] = None,
) -> VerificationOutcome:
    """Ask the verifier whether the photo matches the report, and settle the task if it does.

    A rejected or failed verification writes nothing: the report stays
    in progress and no points move. No retry happens here; the collector
    resubmits.
    """
    report = _held_report(report_id, collector_id)
    try:
        verification = verifier.verify(image_bytes, mime_type, report.waste_type, report.amount)
    except VerificationError:
        current_app.logger.warning("Verification unavailable", extra={"report_id": report_id})
        raise

    threshold = float(current_app.config.get("VERIFICATION_CONFIDENCE_THRESHOLD", 0.7))
    if not is_accepted(verification, threshold):
        current_app.logger.info(
            "Verification rejected",
            extra={"report_id": report_id, "collector_id": collector_id, **verification.to_dict()},
        )
        return VerificationOutcome(verified=False, report=report, verification=verification)

    low = int(current_app.config.get("COLLECT_REWARD_MIN", 10))
    high = int(current_app.config.get("COLLECT_REWARD_MAX", 59))
    reward_points = (rng or random).randint(low, high)

    try:
        updated = (
            Report.query.filter(
                Report.id == report_id,
                Report.status == "in_progress",
                Report.collector_id == collector_id,
            )
            .update(
                {Report.status: "verified", Report.updated_at: datetime.utcnow()},
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.session.rollback()
            raise InvalidTransitionError("Report was settled by another request")
        db.session.add(
            CollectedWaste(
                report_id=report_id,
                collector_id=collector_id,
                collection_date=datetime.utcnow(),
                status="verified",
                verification=verification.to_dict(),
            )
        )
        award_points(
            collector_id,
            "earned_collect",
            reward_points,
            "Points earned for collecting waste",
            reference=f"report:{report_id}:collect",
        )
        emit_notification(
            collector_id,
            f"Collection verified! You've earned {reward_points} points.",
            "reward",
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Verification settlement failed", extra={"report_id": report_id})
        raise StoreError("Could not record the collection") from exc
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(report)
    current_app.logger.info(
        "Report verified",
        extra={"report_id": report_id, "collector_id": collector_id, "reward": reward_points},
    )
    return VerificationOutcome(verified=True, report=report, verification=verification, reward=reward_points)


def recent_reports(limit: int = 10) -> List[Report]:
    try:
        return Report.query.order_by(Report.created_at.desc(), Report.id.desc()).limit(limit).all()
    except SQLAlchemyError:
        current_app.logger.exception("Fetching recent reports failed")
        return []


def collection_tasks(limit: int = 20, status: Optional[str] = None) -> List[Report]:
    try:
        query = Report.query
        if status and status in REPORT_STATUSES:
            query = query.filter(Report.status == status)
        return query.order_by(Report.created_at.desc(), Report.id.desc()).limit(limit).all()
    except SQLAlchemyError:
        current_app.logger.exception("Fetching collection tasks failed")
        return []


def impact_summary() -> Dict[str, int]:
    try:
        reports = db.session.query(func.count(Report.id)).scalar() or 0
        collections = db.session.query(func.count(CollectedWaste.id)).scalar() or 0
        earned = (
            db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
            .filter(Transaction.type.like("earned%"))
            .scalar()
        )
        redeemed = (
            db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
            .filter(Transaction.type == "redeemed")
            .scalar()
        )
    except SQLAlchemyError:
        current_app.logger.exception("Impact summary unavailable")
        return {"reports_submitted": 0, "collections_verified": 0, "tokens_earned": 0, "tokens_redeemed": 0}
    return {
        "reports_submitted": int(reports),
        "collections_verified": int(collections),
        "tokens_earned": int(earned or 0),
        "tokens_redeemed": int(redeemed or 0),
    }
