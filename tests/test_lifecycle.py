from datetime import timedelta

import pytest
from sqlalchemy import func, select

from questbot import lifecycle
from questbot.errors import InvalidState, NotFound, ValidationError
from questbot.models import Activity, FocusSession, Goal, HabitLog, User


def _organize(session, user_id, activity_id, **overrides):
    kwargs = dict(life_area="mental", horizon="week", exe_type="task", category="side-quest")
    kwargs.update(overrides)
    return lifecycle.organize_activity(session, user_id, activity_id, **kwargs)


def _user(session, user_id) -> User:
    return session.get(User, user_id)


def _ledger_total(session, user_id) -> int:
    acts = session.execute(
        select(func.coalesce(func.sum(Activity.total_score), 0)).where(Activity.user_id == user_id)
    ).scalar_one()
    habits = session.execute(
        select(func.coalesce(func.sum(HabitLog.score), 0)).where(HabitLog.user_id == user_id)
    ).scalar_one()
    return acts + habits


def test_ensure_user_creates_once_and_refreshes(session):
    u1 = lifecycle.ensure_user(session, "555", first_name="Bo")
    u2 = lifecycle.ensure_user(session, "555", first_name="Bob", chat_id="555")
    assert u1.id == u2.id
    assert u2.first_name == "Bob"
    assert u2.vitality == 100
    assert u2.total_score == 0


def test_full_lifecycle_scores_every_stage(session, user_id, t0):
    goal = lifecycle.create_goal(session, user_id, "Ship the book", "mental")
    cap = lifecycle.capture_activity(session, user_id, "Write report https://x.io/doc", now=t0)
    assert cap.score_delta == 15
    assert cap.details["link"] == "https://x.io/doc"

    org = lifecycle.organize_activity(
        session, user_id, cap.item_id,
        life_area="mental", horizon="today", exe_type="task", category="main-quest",
        goal_id=goal.goal_id, priority_tags="I,U", deadline=t0 + timedelta(days=1), est_minutes=30,
        now=t0,
    )
    assert org.score_delta == 59
    assert org.status == "organized"

    lifecycle.start_focus(session, user_id, cap.item_id, feeling_before="anxious", now=t0)
    done = lifecycle.finish_focus(session, user_id, cap.item_id, now=t0 + timedelta(minutes=20))
    assert done.status == "complete"
    assert done.score_delta == 104
    assert done.bonus_currency_delta == 1
    assert done.details["actual_minutes"] == 20

    ev = lifecycle.evaluate_activity(session, user_id, cap.item_id, "calm", now=t0 + timedelta(minutes=25))
    assert ev.score_delta == 31
    session.commit()

    act = session.execute(select(Activity).where(Activity.activity_id == cap.item_id)).scalar_one()
    assert act.priority_tags == "IncUp"
    assert act.mood_delta == 4
    assert act.total_score == 15 + 59 + 104 + 31
    assert act.total_score == act.capture_score + act.organize_score + act.done_score + act.evaluate_score
    assert act.bonus_currency == 1
    user = _user(session, user_id)
    assert user.total_score == 209
    assert user.bonus_currency == 1
    assert user.vitality == 100

    fs = session.execute(select(FocusSession).where(FocusSession.activity_pk == act.id)).scalar_one()
    assert fs.completed_task is True
    assert fs.duration_minutes == 20


def test_late_finish_costs_vitality_and_never_below_zero(session, user_id, t0):
    for expected_vitality, start_vitality in ((90, 100), (0, 5)):
        _user(session, user_id).vitality = start_vitality
        cap = lifecycle.capture_activity(session, user_id, "Pay the bill", now=t0)
        _organize(session, user_id, cap.item_id, deadline=t0, now=t0)
        lifecycle.start_focus(session, user_id, cap.item_id, now=t0)
        res = lifecycle.finish_focus(session, user_id, cap.item_id, now=t0 + timedelta(hours=2))
        assert res.status == "complete-late"
        assert res.is_late
        assert res.vitality == expected_vitality


def test_illegal_transitions_raise_invalid_state(session, user_id, t0):
    cap = lifecycle.capture_activity(session, user_id, "Something", now=t0)
    with pytest.raises(InvalidState):
        lifecycle.start_focus(session, user_id, cap.item_id)
    with pytest.raises(InvalidState):
        lifecycle.finish_focus(session, user_id, cap.item_id)
    with pytest.raises(InvalidState):
        lifecycle.evaluate_activity(session, user_id, cap.item_id, "calm")

    _organize(session, user_id, cap.item_id)
    with pytest.raises(InvalidState):
        _organize(session, user_id, cap.item_id)

    lifecycle.start_focus(session, user_id, cap.item_id, now=t0)
    with pytest.raises(InvalidState):
        lifecycle.start_focus(session, user_id, cap.item_id, now=t0)
    lifecycle.finish_focus(session, user_id, cap.item_id, now=t0 + timedelta(minutes=5))
    lifecycle.evaluate_activity(session, user_id, cap.item_id, "calm")
    with pytest.raises(InvalidState):
        lifecycle.evaluate_activity(session, user_id, cap.item_id, "joyful")


def test_unknown_items_raise_not_found(session, user_id):
    with pytest.raises(NotFound):
        lifecycle.start_focus(session, user_id, "A-0099")
    with pytest.raises(NotFound):
        lifecycle.log_habit(session, user_id, "H-0099", "easy")
    with pytest.raises(NotFound):
        lifecycle.capture_activity(session, 424242, "orphan")


def test_failed_organize_records_no_partial_score(session, user_id):
    cap = lifecycle.capture_activity(session, user_id, "Plan trip")
    session.commit()
    with pytest.raises(ValidationError):
        _organize(session, user_id, cap.item_id, category="boss-fight")
    session.rollback()
    act = session.execute(select(Activity).where(Activity.activity_id == cap.item_id)).scalar_one()
    assert act.status == "captured"
    assert act.organize_score is None
    assert _user(session, user_id).total_score == 10


def test_organize_rejects_unknown_goal(session, user_id):
    cap = lifecycle.capture_activity(session, user_id, "Plan trip")
    with pytest.raises(NotFound):
        _organize(session, user_id, cap.item_id, goal_id="G-0042")


def test_capture_rejects_empty_text(session, user_id):
    with pytest.raises(ValidationError):
        lifecycle.capture_activity(session, user_id, "   ")


def test_abandon_is_explicit_and_unscored(session, user_id, t0):
    cap = lifecycle.capture_activity(session, user_id, "Learn the banjo", now=t0)
    _organize(session, user_id, cap.item_id, now=t0)
    lifecycle.start_focus(session, user_id, cap.item_id, now=t0)
    before = _user(session, user_id).total_score

    res = lifecycle.abandon_activity(session, user_id, cap.item_id, reason="lost interest",
                                     now=t0 + timedelta(minutes=12))
    assert res.status == "abandoned"
    assert res.score_delta == 0
    assert _user(session, user_id).total_score == before
    assert _user(session, user_id).vitality == 100

    fs = session.execute(select(FocusSession)).scalar_one()
    assert fs.interrupted_reason == "lost interest"
    assert fs.duration_minutes == 12
    assert fs.completed_task is False

    with pytest.raises(InvalidState):
        lifecycle.abandon_activity(session, user_id, cap.item_id)


def test_enrich_patches_without_rescoring(session, user_id):
    cap = lifecycle.capture_activity(session, user_id, "Read paper")
    res = lifecycle.enrich_activity(session, user_id, cap.item_id, est_minutes=45,
                                    priority_tags="IncUp", feeling_before="curious", mental_block=True)
    assert res.score_delta == 0
    act = session.execute(select(Activity).where(Activity.activity_id == cap.item_id)).scalar_one()
    assert (act.est_minutes, act.priority_tags, act.feeling_before, act.mental_block) == (45, "IncUp", "curious", True)
    assert act.total_score == 10

    with pytest.raises(ValidationError):
        lifecycle.enrich_activity(session, user_id, cap.item_id, est_minutes=0)
    with pytest.raises(ValidationError):
        lifecycle.enrich_activity(session, user_id, cap.item_id, feeling_before="meh")


def test_split_creates_captured_children(session, user_id):
    parent = lifecycle.capture_activity(session, user_id, "Move house")
    results = lifecycle.split_activity(session, user_id, parent.item_id, ["Book van", " ", "Pack books"])
    assert [r.item_id for r in results] == ["A-0002", "A-0003"]
    children = session.execute(
        select(Activity).where(Activity.depends_on == parent.item_id).order_by(Activity.id)
    ).scalars().all()
    assert [c.activity for c in children] == ["Book van", "Pack books"]
    assert all(c.status == "captured" for c in children)
    assert _user(session, user_id).total_score == 30

    with pytest.raises(ValidationError):
        lifecycle.split_activity(session, user_id, parent.item_id, [])


def test_habit_logging_streaks_and_ledger(session, user_id):
    habit = lifecycle.create_habit(session, user_id, "Stretch", "physical",
                                   easy="5 min", medium="15 min", hard="30 min", peak="yoga class")
    assert habit.habit_id == "H-0001"
    scores = [lifecycle.log_habit(session, user_id, habit.habit_id, "easy").score_delta for _ in range(7)]
    assert scores == [5, 5, 5, 5, 5, 5, 6]  # 7th log crosses the first week
    res = lifecycle.log_habit(session, user_id, habit.habit_id, "peak", "anxious", "calm")
    assert res.details == {"current_streak": 8, "max_streak": 8}
    assert habit.mood_delta == 4

    with pytest.raises(ValidationError):
        lifecycle.log_habit(session, user_id, habit.habit_id, "legendary")

    cap = lifecycle.capture_activity(session, user_id, "Call mum")
    _organize(session, user_id, cap.item_id)
    session.commit()
    assert _user(session, user_id).total_score == _ledger_total(session, user_id)


def test_create_habit_requires_name_and_area(session, user_id):
    with pytest.raises(ValidationError):
        lifecycle.create_habit(session, user_id, "", "physical")
    with pytest.raises(ValidationError):
        lifecycle.create_habit(session, user_id, "Run", "astral")


def test_goals_create_batch_and_update(session, user_id):
    goals = lifecycle.create_goals(session, user_id, [
        {"title": "Run a marathon", "life_area": "physical"},
        {"title": "Save", "life_area": "financial", "horizon": "quarter", "category": "sleeping-dragon"},
    ])
    assert [g.goal_id for g in goals] == ["G-0001", "G-0002"]
    assert goals[1].horizon == "quarter"

    updated = lifecycle.update_goal(session, user_id, "G-0001", status="paused")
    assert updated.status == "paused"
    assert [g.goal_id for g in lifecycle.active_goals(session, user_id)] == ["G-0002"]
    lifecycle.update_goal(session, user_id, "G-0001", status="active")
    assert _user(session, user_id).total_score == 0

    with pytest.raises(ValidationError):
        lifecycle.update_goal(session, user_id, "G-0001", status="archived")


def test_normalize_priority_tags():
    assert lifecycle.normalize_priority_tags("IncUp") == "IncUp"
    assert lifecycle.normalize_priority_tags("I,U") == "IncUp"
    assert lifecycle.normalize_priority_tags("importance urgency") == "IncUp"
    assert lifecycle.normalize_priority_tags("") is None
    with pytest.raises(ValidationError):
        lifecycle.normalize_priority_tags("X")


def test_goal_and_user_rows_hold_only_written_columns(session, user_id):
    goal = lifecycle.create_goal(session, user_id, "Run a marathon", "physical", description="spring race")
    assert "gap_score" not in Goal.__table__.columns
    assert "timezone" not in User.__table__.columns
    assert (goal.title, goal.description, goal.horizon, goal.category) == (
        "Run a marathon", "spring race", "annum", "main-quest")
