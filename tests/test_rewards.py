import pytest
from sqlalchemy.exc import OperationalError

import utils.rewards as rewards_module
from extensions import db
from models import Notification, Reward, RewardItem, Transaction
from utils.errors import InsufficientPointsError, RecordNotFoundError, StoreError, ValidationError
from utils.ledger import compute_balance
from utils.rewards import (
    REDEEM_ALL_ID,
    add_points,
    award_points,
    get_or_create_reward,
    list_available_rewards,
    reconcile_reward,
    redeem_reward,
    reward_summary,
)


def test_get_or_create_defaults_and_idempotence(app, reporter):
    first = get_or_create_reward(reporter.id)
    db.session.commit()
    second = get_or_create_reward(reporter.id)
    assert first.id == second.id
    assert (first.points, first.level, first.is_available) == (0, 1, True)
    assert Reward.query.filter_by(user_id=reporter.id).count() == 1


def test_get_or_create_recovers_when_another_writer_wins(app, reporter, monkeypatch):
    user_id = reporter.id
    existing = get_or_create_reward(user_id)
    db.session.commit()
    existing_id = existing.id

    # Both callers saw "no record"; the unique user_id decides the winner.
    monkeypatch.setattr(rewards_module, "_find_reward", lambda _user_id: None)
    reward = get_or_create_reward(user_id)
    db.session.commit()

    assert reward.id == existing_id
    assert Reward.query.filter_by(user_id=user_id).count() == 1


def test_add_points_increments_in_place(app, reporter):
    add_points(reporter.id, 15)
    reward = add_points(reporter.id, 5)
    db.session.commit()
    assert reward.points == 20


def test_add_points_rejects_non_integer(app, reporter):
    with pytest.raises(ValidationError):
        add_points(reporter.id, 1.5)


def test_award_points_writes_ledger_and_cache(app, reporter):
    award_points(reporter.id, "earned_collect", 120, "collect", reference="report:7:collect")
    db.session.commit()
    reward = Reward.query.filter_by(user_id=reporter.id).one()
    assert reward.points == 120 == compute_balance(reporter.id)
    assert reward.level == 2


def test_award_points_is_idempotent_per_reference(app, reporter):
    assert award_points(reporter.id, "earned_collect", 30, "collect", reference="report:9:collect") is not None
    assert award_points(reporter.id, "earned_collect", 30, "collect", reference="report:9:collect") is None
    db.session.commit()
    assert Transaction.query.filter_by(user_id=reporter.id).count() == 1
    assert compute_balance(reporter.id) == 30


def test_reconcile_repairs_drifted_cache(app, reporter):
    award_points(reporter.id, "earned_report", 10, "report")
    db.session.commit()
    reward = Reward.query.filter_by(user_id=reporter.id).one()
    reward.points = 999
    db.session.commit()

    repaired = reconcile_reward(reporter.id)
    db.session.commit()
    assert repaired.points == 10


def test_reward_summary_reports_ledger_totals(app, reporter):
    award_points(reporter.id, "earned_report", 10, "report")
    award_points(reporter.id, "earned_collect", 25, "collect")
    db.session.commit()
    summary = reward_summary(reporter.id)
    assert summary == {"balance": 35, "level": 1, "total_earned": 35, "total_redeemed": 0}


def test_redeem_more_than_balance_fails_and_keeps_balance(app, reporter):
    award_points(reporter.id, "earned_report", 20, "report")
    db.session.commit()
    item = RewardItem.query.filter_by(name="Compost Starter Kit").one()

    with pytest.raises(InsufficientPointsError):
        redeem_reward(reporter.id, item.id)

    assert compute_balance(reporter.id) == 20
    assert Reward.query.filter_by(user_id=reporter.id).one().points == 20
    assert Transaction.query.filter_by(user_id=reporter.id, type="redeemed").count() == 0


def test_redeem_catalog_item(app, reporter):
    award_points(reporter.id, "earned_collect", 60, "collect")
    db.session.commit()
    item = RewardItem.query.filter_by(name="Reusable Tote Bag").one()

    result = redeem_reward(reporter.id, item.id)

    assert result["balance"] == 10
    assert result["transaction"]["amount"] == 50
    assert compute_balance(reporter.id) == 10
    assert Notification.query.filter_by(user_id=reporter.id, type="redemption").count() == 1


def test_redeem_all_points(app, reporter):
    award_points(reporter.id, "earned_report", 10, "report")
    award_points(reporter.id, "earned_collect", 33, "collect")
    db.session.commit()

    result = redeem_reward(reporter.id, REDEEM_ALL_ID)

    assert result["balance"] == 0
    assert result["transaction"]["amount"] == 43
    assert compute_balance(reporter.id) == 0


def test_redeem_all_with_empty_balance_fails(app, reporter):
    with pytest.raises(InsufficientPointsError):
        redeem_reward(reporter.id, None)


def test_redeem_unknown_item(app, reporter):
    award_points(reporter.id, "earned_report", 10, "report")
    db.session.commit()
    with pytest.raises(RecordNotFoundError):
        redeem_reward(reporter.id, 9999)


def test_catalog_starts_with_points_entry(app, reporter):
    award_points(reporter.id, "earned_report", 10, "report")
    db.session.commit()
    catalog = list_available_rewards(reporter.id)
    assert catalog[0]["id"] == REDEEM_ALL_ID
    assert catalog[0]["cost"] == 10
    assert [entry["name"] for entry in catalog[1:]] == [
        "Reusable Tote Bag",
        "Compost Starter Kit",
        "Transit Day Pass",
    ]


def test_ledger_reconcile_command_fixes_drift(app, reporter, collector):
    award_points(reporter.id, "earned_report", 10, "report")
    award_points(collector.id, "earned_collect", 40, "collect")
    db.session.commit()
    Reward.query.filter_by(user_id=collector.id).one().points = 3
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["ledger-reconcile"])

    assert result.exit_code == 0
    assert "Corrected 1 reward record(s)" in result.output
    assert Reward.query.filter_by(user_id=collector.id).one().points == 40


def _break_aggregates(monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database unavailable"))

    monkeypatch.setattr(db.session(), "query", broken)


def test_summary_keeps_cached_points_when_ledger_unreadable(app, reporter, monkeypatch):
    user_id = reporter.id
    award_points(user_id, "earned_report", 10, "report")
    db.session.commit()

    _break_aggregates(monkeypatch)
    summary = reward_summary(user_id)
    monkeypatch.undo()

    assert summary["balance"] == 10
    assert Reward.query.filter_by(user_id=user_id).one().points == 10
    assert compute_balance(user_id) == 10


def test_reconcile_refuses_to_rewrite_from_unreadable_ledger(app, reporter, monkeypatch):
    user_id = reporter.id
    award_points(user_id, "earned_collect", 120, "collect")
    db.session.commit()

    _break_aggregates(monkeypatch)
    with pytest.raises(StoreError):
        reconcile_reward(user_id)
    monkeypatch.undo()
    db.session.rollback()

    reward = Reward.query.filter_by(user_id=user_id).one()
    assert (reward.points, reward.level) == (120, 2)
