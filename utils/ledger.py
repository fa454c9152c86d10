"""Append-only point ledger: transaction writes and balance aggregation."""
from __future__ import annotations

from typing import Dict, Iterable, List

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import TRANSACTION_TYPES, Transaction
from utils.errors import StoreError, ValidationError

DEFAULT_RECENT_LIMIT = 10


def _validate_entry(kind: str, amount) -> None:
    if kind not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {kind}")
    # bool is an int subclass; True is not a point amount.
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Transaction amount must be an integer")
    if amount < 0:
        raise ValidationError("Transaction amount must not be negative")


def append_transaction(
    user_id: str,
    kind: str,
    amount: int,
    description: str,
    *,
    reference: str | None = None,
) -> Transaction:
    """Add one immutable ledger row to the current unit of work.

    The caller owns the commit so the entry lands together with whatever
    state change earned or spent the points. Persistence failures roll the
    session back and surface as ``StoreError``; a lost reward write is never
    swallowed.
    """
    _validate_entry(kind, amount)
    if not user_id:
        raise ValidationError("Transaction requires a user")

    entry = Transaction(
        user_id=user_id,
        type=kind,
        amount=amount,
        description=(description or "")[:500],
        reference=reference,
    )
    try:
        db.session.add(entry)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Ledger write failed",
            extra={"user_id": user_id, "type": kind, "amount": amount, "reference": reference},
        )
        raise StoreError("Could not record the transaction") from exc
    current_app.logger.info(
        "Ledger entry appended",
        extra={"user_id": user_id, "type": kind, "amount": amount, "reference": reference},
    )
    return entry


def fold_balance(transactions: Iterable) -> int:
    """Replay transactions in any order; earned kinds add, redemptions subtract, floor at zero."""
    total = 0
    for txn in transactions:
        if txn.type.startswith("earned"):
            total += txn.amount
        else:
            total -= txn.amount
    return max(total, 0)


def ledger_totals(user_id: str, *, strict: bool = False) -> Dict[str, int]:
    """Earned and redeemed sums for the user.

    Read paths get zeros when the store is unavailable. Callers that write
    a value derived from these totals pass ``strict=True`` and get a
    ``StoreError`` instead, so a fallback zero never reaches the cache.
    """
    earned_expr = func.coalesce(
        func.sum(case((Transaction.type.like("earned%"), Transaction.amount), else_=0)), 0
    )
    redeemed_expr = func.coalesce(
        func.sum(case((Transaction.type == "redeemed", Transaction.amount), else_=0)), 0
    )
    try:
        earned, redeemed = (
            db.session.query(earned_expr, redeemed_expr).filter(Transaction.user_id == user_id).one()
        )
    except SQLAlchemyError as exc:
        current_app.logger.exception("Ledger totals unavailable", extra={"user_id": user_id})
        if strict:
            raise StoreError("Could not read the ledger") from exc
        return {"earned": 0, "redeemed": 0}
    return {"earned": int(earned or 0), "redeemed": int(redeemed or 0)}


def compute_balance(user_id: str) -> int:
    """Balance over the whole ledger for the user; degrades to 0 when the store is unavailable."""
    totals = ledger_totals(user_id)
    return max(totals["earned"] - totals["redeemed"], 0)


def list_recent_transactions(user_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[Transaction]:
    try:
        return (
            Transaction.query.filter_by(user_id=user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(max(int(limit), 0))
            .all()
        )
    except SQLAlchemyError:
        current_app.logger.exception("Fetching transactions failed", extra={"user_id": user_id})
        return []


def has_reference(reference: str | None) -> bool:
    if not reference:
        return False
    return db.session.query(Transaction.id).filter_by(reference=reference).first() is not None
