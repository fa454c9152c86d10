import itertools
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from extensions import db
from models import Transaction
from utils.errors import StoreError, ValidationError
from utils.ledger import (
    append_transaction,
    compute_balance,
    fold_balance,
    has_reference,
    ledger_totals,
    list_recent_transactions,
)


def _entry(kind, amount):
    return SimpleNamespace(type=kind, amount=amount)


@pytest.mark.parametrize(
    "kind, amount",
    [
        ("earned_report", -1),
        ("earned_report", 2.5),
        ("earned_report", True),
        ("bonus", 5),
    ],
)
def test_append_rejects_bad_input(app, reporter, kind, amount):
    with pytest.raises(ValidationError):
        append_transaction(reporter.id, kind, amount, "bad")
    assert Transaction.query.count() == 0


def test_append_is_visible_after_commit(app, reporter):
    entry = append_transaction(reporter.id, "earned_report", 10, "Points earned for reporting waste")
    db.session.commit()
    assert entry.id is not None
    assert Transaction.query.filter_by(user_id=reporter.id).count() == 1


def test_fold_balance_is_order_independent_and_clamped():
    history = [
        _entry("earned_report", 10),
        _entry("redeemed", 25),
        _entry("earned_collect", 30),
        _entry("redeemed", 5),
    ]
    results = {fold_balance(order) for order in itertools.permutations(history)}
    assert results == {10}
    assert fold_balance([_entry("redeemed", 5)]) == 0


def test_earn_then_redeem_same_amount_is_zero(app, reporter):
    append_transaction(reporter.id, "earned_report", 40, "earn")
    append_transaction(reporter.id, "redeemed", 40, "spend")
    db.session.commit()
    assert compute_balance(reporter.id) == 0


def test_balance_uses_whole_history_not_recent_page(app, reporter):
    for _ in range(15):
        append_transaction(reporter.id, "earned_report", 10, "earn")
    db.session.commit()
    assert compute_balance(reporter.id) == 150
    assert len(list_recent_transactions(reporter.id)) == 10


def test_balance_floors_at_zero(app, reporter):
    append_transaction(reporter.id, "earned_report", 10, "earn")
    append_transaction(reporter.id, "redeemed", 30, "overspend")
    db.session.commit()
    assert compute_balance(reporter.id) == 0
    assert ledger_totals(reporter.id) == {"earned": 10, "redeemed": 30}


def test_recent_transactions_newest_first(app, reporter):
    base = datetime(2024, 1, 1)
    for offset in (2, 0, 1):
        db.session.add(
            Transaction(
                user_id=reporter.id,
                type="earned_report",
                amount=offset + 1,
                description=f"day {offset}",
                date=base + timedelta(days=offset),
            )
        )
    db.session.commit()
    recent = list_recent_transactions(reporter.id, limit=2)
    assert [t.description for t in recent] == ["day 2", "day 1"]


def test_reads_degrade_when_store_is_down(app, reporter, monkeypatch):
    user_id = reporter.id

    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database unavailable"))

    class BrokenQuery:
        def filter_by(self, **kwargs):
            broken()

    monkeypatch.setattr(db.session(), "query", broken)
    monkeypatch.setattr(Transaction, "query", BrokenQuery())
    assert compute_balance(user_id) == 0
    assert list_recent_transactions(user_id) == []


def test_write_failure_propagates(app, reporter, monkeypatch):
    user_id = reporter.id

    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(db.session(), "flush", broken_flush)
    with pytest.raises(StoreError):
        append_transaction(user_id, "earned_collect", 20, "collect")


def test_reference_lookup(app, reporter):
    append_transaction(reporter.id, "earned_report", 10, "earn", reference="report:1:report")
    db.session.commit()
    assert has_reference("report:1:report")
    assert not has_reference("report:2:report")
    assert not has_reference(None)
