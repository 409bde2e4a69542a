from datetime import timedelta

from sqlalchemy import select

from questbot import lifecycle, scheduler, wizard
from questbot.flows import HabitState
from questbot.models import JobAudit, MessageLog, User


def _user_with_backlog(session, telegram_id, interval=60, items=1, t=None):
    user = lifecycle.ensure_user(session, telegram_id, first_name=f"u{telegram_id}", chat_id=telegram_id)
    lifecycle.set_reminder_interval(session, user.id, interval)
    for i in range(items):
        lifecycle.capture_activity(session, user.id, f"thing {i}", now=t)
    return user


def test_is_due_rules(session, t0):
    user = _user_with_backlog(session, "1", interval=60, t=t0)
    assert scheduler.is_due(user, 1, t0)
    assert not scheduler.is_due(user, 0, t0)

    user.last_reminded_at = t0
    assert not scheduler.is_due(user, 1, t0 + timedelta(minutes=59))
    assert scheduler.is_due(user, 1, t0 + timedelta(minutes=60))

    # organizing resets the clock too
    user.last_organized_at = t0 + timedelta(minutes=30)
    assert not scheduler.is_due(user, 1, t0 + timedelta(minutes=60))

    user.reminder_interval_minutes = None
    assert not scheduler.is_due(user, 1, t0 + timedelta(days=2))


def test_sweep_sends_to_due_users_and_stamps_them(session, t0, fake_sender):
    due = _user_with_backlog(session, "11", items=3, t=t0)
    _user_with_backlog(session, "12", items=0, t=t0)           # nothing captured
    lifecycle.ensure_user(session, "13", chat_id="13")          # reminders off
    lifecycle.capture_activity(session, lifecycle.get_user_by_telegram_id(session, "13").id, "x", now=t0)
    session.commit()

    sender = fake_sender
    now = t0 + timedelta(days=2)
    stats = scheduler.sweep_reminders(now=now, sender=sender)
    assert stats == {"sent": 1, "skipped": 0, "errors": 0}
    assert [chat for chat, _ in sender.sent] == ["11"]
    msg = sender.sent[0][1]
    assert "3 captured items" in msg.text
    assert "2 day(s)" in msg.text
    assert msg.choices[0].value == "cmd:organize"

    session.expire_all()
    assert session.get(User, due.id).last_reminded_at == now
    assert session.execute(select(MessageLog).where(MessageLog.direction == "outbound")).scalar_one().chat_id == "11"

    # a second sweep right after sends nothing
    assert scheduler.sweep_reminders(now=now + timedelta(minutes=5), sender=sender)["sent"] == 0


def test_sweep_skips_users_in_a_dialog(session, t0, fake_sender):
    user = _user_with_backlog(session, "21", t=t0)
    wizard.save_state(user, HabitState(prompt="awaiting"))
    session.commit()

    sender = fake_sender
    stats = scheduler.sweep_reminders(now=t0 + timedelta(hours=3), sender=sender)
    assert stats["skipped"] == 1
    assert sender.sent == []
    audit = session.execute(select(JobAudit)).scalar_one()
    assert (audit.status, audit.payload) == ("skipped", {"reason": "active_flow"})


def test_sweep_isolates_per_user_failures(session, t0, fake_sender):
    _user_with_backlog(session, "31", t=t0)
    ok_user = _user_with_backlog(session, "32", t=t0)
    session.commit()

    sender = fake_sender
    sender.fail_for = {"31"}
    stats = scheduler.sweep_reminders(now=t0 + timedelta(hours=3), sender=sender)
    assert stats == {"sent": 1, "skipped": 0, "errors": 1}
    assert [chat for chat, _ in sender.sent] == ["32"]

    statuses = {a.status for a in session.execute(select(JobAudit)).scalars()}
    assert statuses == {"ok", "error"}
    session.expire_all()
    assert session.get(User, ok_user.id).last_reminded_at is not None
    assert lifecycle.get_user_by_telegram_id(session, "31").last_reminded_at is None
