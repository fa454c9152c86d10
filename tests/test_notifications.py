import pytest

from extensions import db
from models import Notification
from utils.errors import ValidationError
from utils.notifications import emit_notification, list_unread, mark_all_read, mark_read


def test_emit_then_list_oldest_first(app, reporter):
    first = emit_notification(reporter.id, "Welcome aboard", "system")
    second = emit_notification(reporter.id, "You've earned 10 points for reporting waste!", "reward")
    db.session.commit()

    unread = list_unread(reporter.id)
    assert [n.id for n in unread] == [first.id, second.id]
    assert all(not n.is_read for n in unread)


def test_emit_rejects_unknown_type(app, reporter):
    with pytest.raises(ValidationError):
        emit_notification(reporter.id, "hello", "marketing")
    with pytest.raises(ValidationError):
        emit_notification(reporter.id, "", "system")


def test_mark_read_is_idempotent(app, reporter):
    notification = emit_notification(reporter.id, "Task claimed", "task")
    db.session.commit()

    assert mark_read(notification.id, reporter.id).is_read is True
    assert mark_read(notification.id, reporter.id).is_read is True
    assert list_unread(reporter.id) == []


def test_mark_read_ignores_foreign_and_missing(app, reporter, collector):
    notification = emit_notification(reporter.id, "Private", "system")
    db.session.commit()

    assert mark_read(notification.id, collector.id) is None
    assert mark_read(987654) is None
    assert db.session.get(Notification, notification.id).is_read is False


def test_mark_all_read_scoped_to_user(app, reporter, collector):
    emit_notification(reporter.id, "one", "system")
    emit_notification(reporter.id, "two", "reward")
    emit_notification(collector.id, "three", "task")
    db.session.commit()

    assert mark_all_read(reporter.id) == 2
    assert list_unread(reporter.id) == []
    assert len(list_unread(collector.id)) == 1
