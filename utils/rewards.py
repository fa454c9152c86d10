"""Per-user reward record kept in step with the ledger, plus redemption."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import Reward, RewardItem
from utils.errors import InsufficientPointsError, RecordNotFoundError, StoreError, ValidationError
from utils.ledger import append_transaction, compute_balance, has_reference, ledger_totals
from utils.notifications import emit_notification

REDEEM_ALL_ID = 0

DEFAULT_REWARD_ITEMS: tuple[tuple[str, int, str, str], ...] = (
    ("Reusable Tote Bag", 50, "A sturdy tote for plastic-free shopping", "Pick up at any community drop-off point"),
    ("Compost Starter Kit", 150, "Bin and starter mix for home composting", "Delivered to your registered address"),
    ("Transit Day Pass", 250, "One day of free public transport", "Code sent by notification"),
)


def ensure_default_reward_catalog() -> None:
    for name, cost, description, collection_info in DEFAULT_REWARD_ITEMS:
        RewardItem.get_or_create(name, cost, description=description, collection_info=collection_info)


def _level_for(earned: int) -> int:
    step = max(int(current_app.config.get("REWARD_LEVEL_STEP", 100)), 1)
    return 1 + max(earned, 0) // step


def _find_reward(user_id: str) -> Optional[Reward]:
    return Reward.query.filter_by(user_id=user_id).first()


def get_or_create_reward(user_id: str) -> Reward:
    """Return the user's record, creating it at zero points; the unique user_id settles concurrent creators."""
    reward = _find_reward(user_id)
    if reward:
        return reward
    reward = Reward(user_id=user_id, points=0, level=1, is_available=True)
    try:
        with db.session.begin_nested():
            db.session.add(reward)
    except IntegrityError:
        current_app.logger.info("Reward record created concurrently", extra={"user_id": user_id})
        reward = Reward.query.filter_by(user_id=user_id).one()
    return reward


def add_points(user_id: str, delta: int) -> Reward:
    """Increment the cached total in place (no read-modify-write). Pair with a ledger entry."""
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("Point delta must be an integer")
    get_or_create_reward(user_id)
    try:
        Reward.query.filter_by(user_id=user_id).update(
            {Reward.points: Reward.points + delta, Reward.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Reward increment failed", extra={"user_id": user_id, "delta": delta})
        raise StoreError("Could not update reward points") from exc
    reward = _find_reward(user_id)
    db.session.refresh(reward)
    return reward


def deduct_points(user_id: str, cost: int) -> Reward:
    """Conditional decrement: succeeds only while the cached total covers the cost."""
    if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
        raise ValidationError("Cost must be a non-negative integer")
    get_or_create_reward(user_id)
    try:
        updated = Reward.query.filter(Reward.user_id == user_id, Reward.points >= cost).update(
            {Reward.points: Reward.points - cost, Reward.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Reward decrement failed", extra={"user_id": user_id, "cost": cost})
        raise StoreError("Could not update reward points") from exc
    if updated != 1:
        raise InsufficientPointsError("Insufficient points for this reward")
    reward = _find_reward(user_id)
    db.session.refresh(reward)
    return reward


def reconcile_reward(user_id: str) -> Reward:
    """Rewrite the cached total from the ledger when the two disagree.

    Raises ``StoreError`` when the ledger cannot be read; the cache is left alone.
    """
    reward = get_or_create_reward(user_id)
    totals = ledger_totals(user_id, strict=True)
    balance = max(totals["earned"] - totals["redeemed"], 0)
    level = _level_for(totals["earned"])
    if reward.points != balance or reward.level != level:
        current_app.logger.warning(
            "Reward record drifted from ledger",
            extra={"user_id": user_id, "cached": reward.points, "ledger": balance},
        )
        reward.points = balance
        reward.level = level
        reward.updated_at = datetime.utcnow()
        db.session.flush()
    return reward


def award_points(user_id: str, kind: str, amount: int, description: str, reference: str | None = None) -> Optional[Reward]:
    """Write the ledger entry and the cache increment together; skip references already awarded."""
    if has_reference(reference):
        current_app.logger.info("Award already recorded", extra={"user_id": user_id, "reference": reference})
        return None
    append_transaction(user_id, kind, amount, description, reference=reference)
    reward = add_points(user_id, amount)
    level = _level_for(ledger_totals(user_id, strict=True)["earned"])
    if reward.level != level:
        reward.level = level
        db.session.flush()
    return reward


def _cached_summary(user_id: str) -> Dict:
    try:
        reward = _find_reward(user_id)
    except SQLAlchemyError:
        current_app.logger.exception("Reward record unavailable", extra={"user_id": user_id})
        reward = None
    return {
        "balance": reward.points if reward else 0,
        "level": reward.level if reward else 1,
        "total_earned": 0,
        "total_redeemed": 0,
    }


def reward_summary(user_id: str) -> Dict:
    """Balance view for polling clients. Falls back to the cached record, unchanged, if the ledger is down."""
    try:
        reward = reconcile_reward(user_id)
        totals = ledger_totals(user_id, strict=True)
        db.session.commit()
    except (StoreError, SQLAlchemyError):
        db.session.rollback()
        current_app.logger.warning("Serving cached reward summary", extra={"user_id": user_id})
        return _cached_summary(user_id)
    return {
        "balance": reward.points,
        "level": reward.level,
        "total_earned": totals["earned"],
        "total_redeemed": totals["redeemed"],
    }


def list_available_rewards(user_id: str) -> List[Dict]:
    balance = compute_balance(user_id)
    entries = [
        {
            "id": REDEEM_ALL_ID,
            "name": "Your Points",
            "cost": balance,
            "description": "Redeem your earned points",
            "collection_info": "Points earned from reporting and collecting waste",
        }
    ]
    try:
        items = RewardItem.query.filter_by(is_available=True).order_by(RewardItem.cost.asc()).all()
    except SQLAlchemyError:
        current_app.logger.exception("Fetching reward catalog failed")
        items = []
    entries.extend(item.public_payload() for item in items)
    return entries


def redeem_reward(user_id: str, reward_id: Optional[int] = None) -> Dict:
    """Spend points on a catalog item, or all points when reward_id is None or 0."""
    try:
        reconcile_reward(user_id)
        totals = ledger_totals(user_id, strict=True)
        balance = max(totals["earned"] - totals["redeemed"], 0)

        if reward_id in (None, REDEEM_ALL_ID):
            cost = balance
            label = f"Redeemed all points: {cost}"
            if cost <= 0:
                raise InsufficientPointsError("No points available to redeem")
        else:
            item = db.session.get(RewardItem, reward_id)
            if not item or not item.is_available:
                raise RecordNotFoundError("Reward not found")
            cost = item.cost
            label = f"Redeemed: {item.name}"
            if balance < cost:
                raise InsufficientPointsError("Insufficient points for this reward")

        reward = deduct_points(user_id, cost)
        transaction = append_transaction(user_id, "redeemed", cost, label)
        emit_notification(user_id, f"{label}. Remaining balance: {reward.points} points.", "redemption")
        db.session.commit()
    except (InsufficientPointsError, RecordNotFoundError):
        db.session.rollback()
        current_app.logger.warning("Redemption rejected", extra={"user_id": user_id, "reward_id": reward_id})
        raise
    except StoreError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Redemption failed", extra={"user_id": user_id, "reward_id": reward_id})
        raise StoreError("Could not redeem reward") from exc

    current_app.logger.info("Reward redeemed", extra={"user_id": user_id, "reward_id": reward_id, "cost": cost})
    return {"transaction": transaction.public_payload(), "balance": reward.points, "reward": reward.public_payload()}


def reconcile_all() -> int:
    """Reconcile every reward record; returns the number of corrected records."""
    corrected = 0
    for reward in Reward.query.all():
        before = reward.points
        reconcile_reward(reward.user_id)
        if reward.points != before:
            corrected += 1
    db.session.commit()
    return corrected
