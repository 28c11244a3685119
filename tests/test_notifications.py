from __future__ import annotations

import smtplib

import pytest
from sqlalchemy.orm import Session

from actions.helpers import after_commit, discard_after_commit_hooks, run_after_commit_hooks
from config import Config
from services import notifications


def test_render_fills_missing_values_with_blank():
    subject, body = notifications.render("candidate_rejected", {"fullName": "Asha", "storeName": "DL01"})
    assert subject == "Update on your application - DL01"
    assert "Reason: " in body

    with pytest.raises(KeyError):
        notifications.render("nope", {})


def test_notify_without_address_is_skipped(monkeypatch):
    monkeypatch.setattr(notifications, "deliver", lambda *a, **k: pytest.fail("should not deliver"))
    assert notifications.notify(Config(), "", "otp", {}) is False


def test_notify_swallows_transport_errors(monkeypatch):
    def boom(cfg, address, template_id, data):
        raise smtplib.SMTPException("down")

    monkeypatch.setattr(notifications, "deliver", boom)
    assert notifications.notify(Config(), "a@example.com", "otp", {"otp": "1"}) is False


def test_notify_async_enqueues_celery_task(monkeypatch):
    monkeypatch.setenv("NOTIFY_ASYNC", "1")
    calls = []

    class FakeTask:
        def delay(self, *args):
            calls.append(args)

    monkeypatch.setattr("app.tasks.notifications.send_notification_task", FakeTask())
    monkeypatch.setattr(notifications, "deliver", lambda *a, **k: pytest.fail("should be queued"))

    assert notifications.notify(Config(), "a@example.com", "otp", {"otp": "1"}) is True
    assert calls == [("a@example.com", "otp", {"otp": "1"})]


def test_after_commit_hooks_run_once_or_are_discarded():
    db = Session()
    seen = []
    after_commit(db, seen.append, "first")
    assert run_after_commit_hooks(db) == 1
    assert run_after_commit_hooks(db) == 0

    after_commit(db, seen.append, "dropped")
    discard_after_commit_hooks(db)
    assert run_after_commit_hooks(db) == 0
    assert seen == ["first"]
    db.close()
