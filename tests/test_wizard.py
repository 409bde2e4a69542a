import pytest
from sqlalchemy import select

from questbot import lifecycle
from questbot.flows import HabitState, InboundEvent, load_state, split_callback
from questbot.models import Activity, Goal, Habit, User
from questbot.router import handle_event

TG = "1001"


def say(text, event_id=None):
    return handle_event(InboundEvent(telegram_id=TG, chat_id=TG, text=text, event_id=event_id))


def press(value, step=None):
    return handle_event(InboundEvent(telegram_id=TG, chat_id=TG, kind="choice", choice=value, step=step))


def tap(reply, value):
    """Press the button whose value is `value` in the latest message that has one."""
    for msg in reversed(reply.messages):
        for c in msg.choices:
            step, v = split_callback(c.value)
            if v == value:
                return press(v, step)
    raise AssertionError(f"no button {value!r} in {[c.value for m in reply.messages for c in m.choices]}")


def fresh_user(session, user_id) -> User:
    session.expire_all()
    return session.get(User, user_id)


def test_guided_onboarding_creates_goals_then_sets_interval(session, user_id):
    r = say("/start")
    assert "Guided" in r.text
    r = tap(r, "guided")
    assert "Spiritual" in r.text

    r = say("skip")                                   # no spiritual goal, but the questions go on
    assert "Spiritual" in r.text and "today" in r.text
    say("-")
    r = say("-")
    assert "Physical" in r.text
    say("Run a half marathon")
    say("Jog twice a week")
    r = say("My knees hurt after anything longer than five kilometres")
    assert "Mental" in r.text
    say("Read 20 books")
    say("2 a year")
    say("phone")
    say("-")                                          # financial ideal skipped
    say("broke")
    r = say("I spend whatever arrives on the first weekend of the month")
    assert "Social" in r.text
    say("ok")                                         # too short to be a goal
    say("fine")
    r = say("none")
    assert "Emotional" in r.text
    say("Feel calmer day to day")
    say("stressed")
    r = say("work")

    assert "G-0005" in r.text
    goals = session.execute(select(Goal).where(Goal.user_id == user_id).order_by(Goal.id)).scalars().all()
    assert [(g.life_area, g.horizon, g.category) for g in goals] == [
        ("physical", "annum", "main-quest"),
        ("physical", "quarter", "sleeping-dragon"),
        ("mental", "annum", "main-quest"),
        ("financial", "quarter", "sleeping-dragon"),
        ("emotional", "annum", "main-quest"),
    ]
    assert goals[1].title.startswith("Overcome: My knees")
    assert goals[0].description == "Now: Jog twice a week\nObstacle: My knees hurt after anything longer than five kilometres"
    assert goals[2].description == "Now: 2 a year\nObstacle: phone"

    r = tap(r, "240")
    user = fresh_user(session, user_id)
    assert user.reminder_interval_minutes == 240
    assert user.conversation_state is None
    assert "4h" in r.text


def test_manual_onboarding_reprompts_on_unknown_area(session, user_id):
    r = tap(say("/start"), "manual")
    assert "area: goal" in r.text

    r = say("physical: Run 5k\nfinancial:\nbogus: x")
    assert "bogus: x" in r.text
    assert session.execute(select(Goal)).first() is None

    r = say("physical: Run 5k\nfinancial:")
    assert "G-0001" in r.text
    assert "Skipped: financial" in r.text

    r = say("off")
    user = fresh_user(session, user_id)
    assert user.reminder_interval_minutes is None
    assert user.conversation_state is None


def test_interval_rejects_values_outside_the_menu(session, user_id):
    say("/interval")
    r = say("90")
    assert "Pick one of the options" in r.text
    say("60")
    assert fresh_user(session, user_id).reminder_interval_minutes == 60


def test_organize_dialog_walks_every_field(session, user_id):
    lifecycle.create_goal(session, user_id, "Get fit", "physical")
    session.commit()
    say("Book a physio appointment")
    say("Buy running shoes")

    r = say("/organize")
    assert "A-0001" in r.text and "G-0001" in r.text
    r = tap(r, "1")
    r = tap(r, "I")
    assert "✅ Importance" in [c.label for c in r.messages[-1].choices]
    r = say("u")
    assert "IncUp" in r.text
    r = tap(r, "done")
    r = say("physical")
    r = tap(r, "today")
    r = tap(r, "task")
    category_reply = r
    r = tap(r, "main-quest")
    assert "A-0001 organized: +54" in r.text
    assert "A-0002" in r.messages[-1].text

    act = session.execute(select(Activity).where(Activity.activity_id == "A-0001")).scalar_one()
    assert (act.status, act.goal_id, act.priority_tags, act.life_area) == ("organized", "G-0001", "IncUp", "physical")

    # a button from the previous item is stale: nothing is sent, nothing is scored
    r = tap(category_reply, "side-quest")
    assert r.messages == []
    assert fresh_user(session, user_id).total_score == 10 + 10 + 54

    r = say("/cancel")
    assert "Cancelled" in r.text
    user = fresh_user(session, user_id)
    assert user.conversation_state is None
    assert user.last_organized_at is not None


def test_organize_skips_items_handled_elsewhere(session, user_id):
    say("first thing")
    say("second thing")
    r = say("/organize")
    assert "priority tags" in r.text   # no goals, so straight to tags

    lifecycle.organize_activity(session, user_id, "A-0002", life_area="social", horizon="week",
                                exe_type="task", category="side-quest")
    session.commit()

    r = tap(r, "done")
    r = say("1")                       # spiritual
    r = tap(r, "week")
    r = tap(r, "task")
    r = tap(r, "side-quest")
    assert "Organizing done: 1 item(s), +28 points" in r.text
    user = fresh_user(session, user_id)
    assert user.conversation_state is None
    assert user.last_organized_at is not None


def test_organize_with_empty_queue(session, user_id):
    r = say("/organize")
    assert "Nothing to organize" in r.text
    assert fresh_user(session, user_id).conversation_state is None


def test_habit_dialog_validates_and_creates(session, user_id):
    say("/habit")
    say("Meditate")
    r = say("nowhere")
    assert "Pick one of the life areas" in r.text
    state = load_state(fresh_user(session, user_id).conversation_state)
    assert isinstance(state, HabitState) and state.stage == "area"

    say("mental")
    r = say("a / b / c")
    assert "exactly four" in r.text
    r = say("1 min / 5 min / 10 min / 20 min")
    assert "H-0001" in r.text
    habit = session.execute(select(Habit)).scalar_one()
    assert (habit.life_area, habit.easy, habit.peak) == ("mental", "1 min", "20 min")
    assert fresh_user(session, user_id).conversation_state is None

    r = tap(r, "habit_log:H-0001:hard")
    assert "+20" in r.text


def test_interrupted_dialog_resumes_from_persisted_step(session, user_id):
    say("/habit")
    say("Stretch")
    state = load_state(fresh_user(session, user_id).conversation_state)
    assert state.flow == "habit" and state.name == "Stretch" and state.prompt == "awaiting"

    # a later event, in a brand new transaction, continues where it stopped
    r = say("physical")
    assert "four difficulty tiers" in r.text


def test_commands_inside_a_dialog_are_held_back(session, user_id):
    say("/habit")
    r = say("/summary")
    assert r.text == "Finish this step first, or send /cancel."
    assert load_state(fresh_user(session, user_id).conversation_state).flow == "habit"
    r = say("/help")
    assert "/organize" in r.text


def test_repeated_start_sends_the_prompt_once(session, user_id):
    r = say("/start", event_id=1)
    assert "Guided" in r.text
    assert say("/start", event_id=2).messages == []

    r = tap(r, "guided")
    assert "Spiritual" in r.text
    assert say("/start", event_id=4).messages == []
    # the dialog is still waiting on the same question
    state = load_state(fresh_user(session, user_id).conversation_state)
    assert (state.flow, state.step, state.prompt) == ("onboarding_guided", "guided:spiritual:ideal", "awaiting")


def test_double_tap_on_reminder_button_opens_organize_once(session, user_id):
    say("buy milk")
    r = press("cmd:organize")
    assert "A-0001" in r.text
    step = load_state(fresh_user(session, user_id).conversation_state).step

    assert press("cmd:organize").messages == []
    assert say("/organize").messages == []
    assert load_state(fresh_user(session, user_id).conversation_state).step == step

    # the buttons of the prompt that is out still work
    r = tap(r, "I")
    assert "✅ Importance" in [c.label for c in r.messages[-1].choices]


def test_repeated_habit_command_mid_dialog_sends_nothing(session, user_id):
    say("/habit")
    say("Stretch")
    r = say("/habit")
    assert r.messages == []
    # answering the area step still works afterwards
    r = say("physical")
    assert "four difficulty tiers" in r.text


def test_event_command_names():
    assert InboundEvent(telegram_id=TG, text="/organize@QuestBot now").command == "organize"
    assert InboundEvent(telegram_id=TG, text="/").command == ""
    assert InboundEvent(telegram_id=TG, text="hello").command is None
    assert InboundEvent(telegram_id=TG, kind="choice", choice="cmd:organize").command == "organize"
    assert InboundEvent(telegram_id=TG, kind="choice", choice="cmd:organize", step="mode").command is None
    assert InboundEvent(telegram_id=TG, kind="choice", choice="focus_start:A-0001").command is None


def test_cancel_without_dialog(session, user_id):
    assert "Nothing to cancel" in say("/cancel").text


def test_duplicate_event_ids_are_dropped(session, user_id):
    assert "A-0001" in say("buy milk", event_id=10).text
    assert say("buy milk", event_id=10).messages == []
    assert say("older update", event_id=9).messages == []
    assert "A-0002" in say("buy bread", event_id=11).text
    assert len(session.execute(select(Activity)).scalars().all()) == 2


def test_focus_buttons_drive_the_lifecycle(session, user_id):
    say("Write tests")
    lifecycle.organize_activity(session, user_id, "A-0001", life_area="mental", horizon="week",
                                exe_type="task", category="side-quest")
    session.commit()

    r = press("focus_start:A-0001")
    assert "Focus started" in r.text
    r = tap(r, "focus_finish:A-0001")
    assert "complete" in r.text
    r = tap(r, "evaluate:A-0001:calm")
    assert "Reflection" in r.text

    r = press("focus_finish:A-0001")
    assert r.text.startswith("⚠️")
    act = session.execute(select(Activity)).scalar_one()
    assert act.status == "complete"
    assert act.evaluate_score is not None


def test_stale_dialog_button_after_flow_ended(session, user_id):
    r = press("guided", step="mode")
    assert "dialog that has ended" in r.text


def test_summary_command(session, user_id):
    say("something")
    r = say("/summary")
    assert "Novice" in r.text
    assert "10 points" in r.text


@pytest.mark.parametrize("raw", ['{"flow": "nope"}', "not json"])
def test_unreadable_state_is_discarded(session, user_id, raw):
    session.get(User, user_id).conversation_state = raw
    session.commit()
    r = say("hello there")
    assert "Captured A-0001" in r.text
