"""
Wizard engine: one active multi-step dialog per user.

State lives in User.conversation_state (see flows.py) and is written back after
every step, so a dialog interrupted mid-way resumes from the persisted step.
Each state is either `idle` (prompt not yet shown for this step) or `awaiting`
(prompt shown, next input is the answer). While awaiting, a repeat of the event
that opened the step (the same command, an old button) sends nothing. Invalid
answers re-issue the prompt with an explanation and never advance.

All functions take an open Session; the caller commits.
"""
from __future__ import annotations

from typing import Callable, Optional

from pydantic import ValidationError as StateValidationError
from sqlalchemy.orm import Session

from . import lifecycle
from .debug_utils import debug_log
from .errors import InvalidState, NotFound, QuestError
from .flows import (
    GUIDED_QUESTIONS,
    INTERVAL_CHOICES,
    Choice,
    FlowState,
    HabitState,
    InboundEvent,
    IntervalState,
    OnboardingGuidedState,
    OnboardingManualState,
    OnboardingModeState,
    OrganizeDraft,
    OrganizeState,
    OutboundMessage,
    Reply,
    GuidedAnswer,
    dump_state,
    load_state,
    step_choice,
)
from .models import (
    CATEGORIES,
    DIFFICULTY_TIERS,
    EXE_TYPES,
    HORIZONS,
    LIFE_AREAS,
    STATUS_CAPTURED,
    Activity,
    User,
)
from .lifecycle import PRIORITY_TAG_LETTERS, tags_from_selection

SKIP_WORDS = {"skip", "-"}
MIN_GOAL_CHARS = 3
OBSTACLE_GOAL_MIN_CHARS = 40

# commands that open a flow; repeating one while that flow is awaiting an answer is a no-op
ENTRY_COMMANDS = {
    "start": ("onboarding_mode", "onboarding_guided", "onboarding_manual"),
    "organize": ("organize",),
    "habit": ("habit",),
    "interval": ("interval",),
}

TAG_NAMES = {
    "I": "Importance",
    "N": "Novelty",
    "C": "Control",
    "U": "Urgency",
    "P": "Panic",
}

GUIDED_PROMPTS = {
    "ideal": "What would your {area} life look like a year from now if it went really well? (send 'skip' if it doesn't matter to you now)",
    "current": "And where is your {area} life today, honestly?",
    "obstacle": "What is the biggest obstacle between today and that ideal?",
}


class InvalidInput(Exception):
    """Raised by step handlers; the current prompt is re-issued with the message."""


# ──────────────────────────────────────────────────────────────────────────────
# State persistence
# ──────────────────────────────────────────────────────────────────────────────

def get_state(user: User) -> Optional[FlowState]:
    try:
        return load_state(user.conversation_state)
    except StateValidationError as e:
        print(f"[wizard] discarding unreadable state for user {user.id}: {e}")
        user.conversation_state = None
        return None


def save_state(user: User, state: Optional[FlowState]) -> None:
    user.conversation_state = dump_state(state)


def has_active_flow(user: User) -> bool:
    return get_state(user) is not None


def _label(value: str) -> str:
    return value.replace("-", " ").title()


def _meaningful(text: Optional[str]) -> bool:
    body = (text or "").strip()
    if body.lower() in SKIP_WORDS:
        return False
    return sum(1 for ch in body if ch.isalnum()) >= MIN_GOAL_CHARS


def _match(raw: str, options: tuple[str, ...]) -> Optional[str]:
    norm = raw.strip().lower().replace(" ", "-")
    if norm in options:
        return norm
    if norm.isdigit() and 1 <= int(norm) <= len(options):
        return options[int(norm) - 1]
    return None

# ──────────────────────────────────────────────────────────────────────────────
# Prompts
# ──────────────────────────────────────────────────────────────────────────────

def _prompt_mode(s: Session, user: User, st: OnboardingModeState) -> OutboundMessage:
    name = user.first_name or "adventurer"
    return OutboundMessage(
        text=(
            f"Welcome to QuestBot, {name}! Let's set up your quests.\n"
            "Guided: I ask three short questions for each life area.\n"
            "Manual: you send your goals as 'area: goal' lines."
        ),
        choices=[
            step_choice(st.step, "Guided", "guided"),
            step_choice(st.step, "Manual", "manual"),
        ],
    )


def _prompt_guided(s: Session, user: User, st: OnboardingGuidedState) -> OutboundMessage:
    header = f"[{st.area_idx + 1}/{len(LIFE_AREAS)}] {_label(st.area)}"
    return OutboundMessage(text=f"{header}\n{GUIDED_PROMPTS[st.question].format(area=st.area)}")


def _prompt_manual(s: Session, user: User, st: OnboardingManualState) -> OutboundMessage:
    return OutboundMessage(
        text=(
            "Send one line per life area as 'area: goal', for example:\n"
            "physical: Run a half marathon\n"
            "financial: Save three months of expenses\n"
            f"Areas: {', '.join(LIFE_AREAS)}. Leave a goal blank to skip that area."
        )
    )


def _interval_label(minutes: int) -> str:
    if minutes == 1440:
        return "Daily"
    return f"Every {minutes // 60}h"


def _prompt_interval(s: Session, user: User, st: IntervalState) -> OutboundMessage:
    choices = [step_choice(st.step, _interval_label(m), str(m)) for m in INTERVAL_CHOICES]
    choices.append(step_choice(st.step, "Off", "off"))
    return OutboundMessage(
        text="How often should I nudge you to organize what you've captured?",
        choices=choices,
    )


def _organize_item(s: Session, user: User, st: OrganizeState) -> Optional[Activity]:
    if st.current is None:
        return None
    try:
        return lifecycle.get_activity(s, user.id, st.current)
    except NotFound:
        return None


def _prompt_organize(s: Session, user: User, st: OrganizeState) -> OutboundMessage:
    act = _organize_item(s, user, st)
    title = act.activity if act is not None else st.current
    header = f"[{st.position + 1}/{len(st.queue)}] {st.current}: {title}"
    if st.stage == "goal":
        goals = {g.goal_id: g for g in lifecycle.active_goals(s, user.id)}
        lines = [
            f"{i}. {gid} {goals[gid].title if gid in goals else ''}".rstrip()
            for i, gid in enumerate(st.goal_ids, start=1)
        ]
        choices = [step_choice(st.step, str(i), str(i)) for i in range(1, len(st.goal_ids) + 1)]
        choices.append(step_choice(st.step, "Skip", "skip"))
        return OutboundMessage(
            text=f"{header}\nWhich goal does this serve? Reply with its number or 'skip'.\n" + "\n".join(lines),
            choices=choices,
        )
    if st.stage == "tags":
        picked = set(st.draft.selected_tags)
        choices = [
            step_choice(st.step, ("✅ " if letter in picked else "") + TAG_NAMES[letter], letter)
            for letter in PRIORITY_TAG_LETTERS
        ]
        choices.append(step_choice(st.step, "Done", "done"))
        current = tags_from_selection(picked)
        return OutboundMessage(
            text=f"{header}\nToggle priority tags, then 'done'. Current: {current}",
            choices=choices,
        )
    options = {"area": LIFE_AREAS, "horizon": HORIZONS, "exe": EXE_TYPES, "category": CATEGORIES}[st.stage]
    question = {
        "area": "Which life area?",
        "horizon": "When should this happen?",
        "exe": "What kind of work is it?",
        "category": "Which kind of quest is it?",
    }[st.stage]
    return OutboundMessage(
        text=f"{header}\n{question}",
        choices=[step_choice(st.step, _label(o), o) for o in options],
    )


def _prompt_habit(s: Session, user: User, st: HabitState) -> OutboundMessage:
    if st.stage == "name":
        return OutboundMessage(text="What habit do you want to build? Send a short name.")
    if st.stage == "area":
        return OutboundMessage(
            text=f"Which life area does '{st.name}' belong to?",
            choices=[step_choice(st.step, _label(a), a) for a in LIFE_AREAS],
        )
    return OutboundMessage(
        text=(
            "Describe four difficulty tiers separated by '/': easy / medium / hard / peak.\n"
            "For example: walk 10 min / walk 30 min / run 5k / run 10k"
        )
    )


_PROMPTS: dict[str, Callable] = {
    "onboarding_mode": _prompt_mode,
    "onboarding_guided": _prompt_guided,
    "onboarding_manual": _prompt_manual,
    "interval": _prompt_interval,
    "organize": _prompt_organize,
    "habit": _prompt_habit,
}


def _issue_prompt(s: Session, user: User, st: FlowState, reply: Reply, note: Optional[str] = None) -> Reply:
    msg = _PROMPTS[st.flow](s, user, st)
    if note:
        msg = OutboundMessage(text=f"{note}\n\n{msg.text}", choices=msg.choices)
    reply.messages.append(msg)
    st.prompt = "awaiting"
    save_state(user, st)
    return reply


def _enter(s: Session, user: User, st: FlowState, reply: Reply) -> Reply:
    st.prompt = "idle"
    return _issue_prompt(s, user, st, reply)


def _finish(user: User, reply: Reply, text: Optional[str] = None) -> Reply:
    save_state(user, None)
    if text:
        reply.say(text)
    return reply

# ──────────────────────────────────────────────────────────────────────────────
# Flow entry points
# ──────────────────────────────────────────────────────────────────────────────

def start_onboarding(s: Session, user: User) -> Reply:
    return _enter(s, user, OnboardingModeState(), Reply())


def start_interval(s: Session, user: User) -> Reply:
    return _enter(s, user, IntervalState(), Reply())


def start_habit(s: Session, user: User) -> Reply:
    return _enter(s, user, HabitState(), Reply())


def start_organize(s: Session, user: User) -> Reply:
    queue = [a.activity_id for a in lifecycle.captured_queue(s, user.id)]
    if not queue:
        return _finish(user, Reply(), "Nothing to organize. Send me anything on your mind to capture it.")
    st = OrganizeState(
        queue=queue,
        goal_ids=[g.goal_id for g in lifecycle.active_goals(s, user.id)],
    )
    st.stage = _first_organize_stage(st)
    return _enter(s, user, st, Reply())


def cancel(s: Session, user: User) -> Reply:
    st = get_state(user)
    if st is None:
        return Reply().say("Nothing to cancel.")
    if isinstance(st, OrganizeState) and st.organized:
        lifecycle.mark_organized(s, user.id)
    return _finish(user, Reply(), "Cancelled.")

# ──────────────────────────────────────────────────────────────────────────────
# Step handlers. Each returns the reply, or raises InvalidInput.
# ──────────────────────────────────────────────────────────────────────────────

def _step_mode(s: Session, user: User, st: OnboardingModeState, raw: str, reply: Reply) -> Reply:
    mode = raw.lower()
    if mode in ("guided", "1"):
        return _enter(s, user, OnboardingGuidedState(), reply)
    if mode in ("manual", "2"):
        return _enter(s, user, OnboardingManualState(), reply)
    raise InvalidInput("Please choose Guided or Manual.")


def _guided_goals(st: OnboardingGuidedState) -> list[dict]:
    """Goals are derived only here; every area answered all three questions."""
    entries: list[dict] = []
    for area in LIFE_AREAS:
        ans = st.answers.get(area)
        if ans is None:
            continue
        if _meaningful(ans.ideal):
            details = [f"Now: {ans.current}" if _meaningful(ans.current) else None,
                       f"Obstacle: {ans.obstacle}" if _meaningful(ans.obstacle) else None]
            entries.append({
                "title": ans.ideal.strip(),
                "life_area": area,
                "horizon": "annum",
                "category": "main-quest",
                "description": "\n".join(d for d in details if d) or None,
            })
        if ans.obstacle and len(ans.obstacle.strip()) > OBSTACLE_GOAL_MIN_CHARS:
            entries.append({
                "title": f"Overcome: {ans.obstacle.strip()}",
                "life_area": area,
                "horizon": "quarter",
                "category": "sleeping-dragon",
            })
    return entries


def _step_guided(s: Session, user: User, st: OnboardingGuidedState, raw: str, reply: Reply) -> Reply:
    if not raw:
        raise InvalidInput("I need a few words here (or 'skip').")
    ans = st.answers.setdefault(st.area, GuidedAnswer())
    setattr(ans, st.question, raw)

    if st.question_idx == len(GUIDED_QUESTIONS) - 1:
        st.area_idx += 1
        st.question_idx = 0
    else:
        st.question_idx += 1

    if st.area_idx < len(LIFE_AREAS):
        return _enter(s, user, st, reply)

    goals = lifecycle.create_goals(s, user.id, _guided_goals(st))
    if goals:
        reply.say("Your quests:\n" + "\n".join(f"{g.goal_id} [{g.life_area}] {g.title}" for g in goals))
    else:
        reply.say("No goals this time. You can still capture tasks any time.")
    return _enter(s, user, IntervalState(), reply)


def _step_manual(s: Session, user: User, st: OnboardingManualState, raw: str, reply: Reply) -> Reply:
    lines = [ln.strip() for ln in raw.splitlines() if ln.strip()]
    if not lines:
        raise InvalidInput("Send at least one 'area: goal' line.")
    entries: list[dict] = []
    skipped: list[str] = []
    bad: list[str] = []
    for line in lines:
        area, sep, goal = line.partition(":")
        area = area.strip().lower()
        if not sep or area not in LIFE_AREAS:
            bad.append(line)
            continue
        goal = goal.strip()
        if not goal:
            skipped.append(area)
            continue
        entries.append({"title": goal, "life_area": area})
    if bad:
        raise InvalidInput("I couldn't read these lines:\n" + "\n".join(bad))

    goals = lifecycle.create_goals(s, user.id, entries)
    lines_out = [f"{g.goal_id} [{g.life_area}] {g.title}" for g in goals]
    if skipped:
        lines_out.append(f"Skipped: {', '.join(skipped)}")
    reply.say("Your quests:\n" + "\n".join(lines_out) if lines_out else "No goals recorded.")
    return _enter(s, user, IntervalState(), reply)


def _step_interval(s: Session, user: User, st: IntervalState, raw: str, reply: Reply) -> Reply:
    norm = raw.lower()
    if norm == "off":
        lifecycle.set_reminder_interval(s, user.id, None)
        return _finish(user, reply, "Reminders are off. Send /interval to change that.")
    if not norm.isdigit() or int(norm) not in INTERVAL_CHOICES:
        raise InvalidInput("Pick one of the options.")
    minutes = int(norm)
    lifecycle.set_reminder_interval(s, user.id, minutes)
    return _finish(user, reply, f"I'll nudge you {_interval_label(minutes).lower()} when you have items to organize.")


def _first_organize_stage(st: OrganizeState) -> str:
    return "goal" if st.goal_ids else "tags"


def _next_organize_item(s: Session, user: User, st: OrganizeState, reply: Reply) -> Reply:
    """Move past the current item, skipping anything no longer captured."""
    st.position += 1
    while st.current is not None:
        act = _organize_item(s, user, st)
        if act is not None and act.status == STATUS_CAPTURED:
            break
        st.position += 1
    if st.current is None:
        lifecycle.mark_organized(s, user.id)
        return _finish(
            user, reply,
            f"Organizing done: {st.organized} item(s), +{st.points} points. "
            f"Total: {user.total_score}.",
        )
    st.stage = _first_organize_stage(st)
    st.draft = OrganizeDraft()
    return _enter(s, user, st, reply)


def _step_organize(s: Session, user: User, st: OrganizeState, raw: str, reply: Reply) -> Reply:
    act = _organize_item(s, user, st)
    if act is None or act.status != STATUS_CAPTURED:
        reply.say(f"{st.current} was already handled elsewhere; skipping it.")
        return _next_organize_item(s, user, st, reply)

    value = raw.strip()
    if st.stage == "goal":
        if value.lower() in SKIP_WORDS:
            st.draft.goal_id = None
        elif value.isdigit() and 1 <= int(value) <= len(st.goal_ids):
            st.draft.goal_id = st.goal_ids[int(value) - 1]
        else:
            raise InvalidInput(f"Reply with a number from 1 to {len(st.goal_ids)} or 'skip'.")
        st.stage = "tags"
        return _enter(s, user, st, reply)

    if st.stage == "tags":
        if value.lower() == "done":
            st.stage = "area"
            return _enter(s, user, st, reply)
        letters = {ch.upper() for ch in value if not ch.isspace() and ch != ","}
        if not letters or not letters <= set(PRIORITY_TAG_LETTERS):
            raise InvalidInput("Toggle with I, N, C, U or P, then 'done'.")
        picked = set(st.draft.selected_tags) ^ letters
        st.draft.selected_tags = [t for t in PRIORITY_TAG_LETTERS if t in picked]
        return _enter(s, user, st, reply)

    if st.stage == "area":
        st.draft.life_area = _match(value, LIFE_AREAS)
        if st.draft.life_area is None:
            raise InvalidInput("Pick one of the life areas.")
        st.stage = "horizon"
        return _enter(s, user, st, reply)

    if st.stage == "horizon":
        st.draft.horizon = _match(value, HORIZONS)
        if st.draft.horizon is None:
            raise InvalidInput("Pick one of the horizons.")
        st.stage = "exe"
        return _enter(s, user, st, reply)

    if st.stage == "exe":
        st.draft.exe_type = _match(value, EXE_TYPES)
        if st.draft.exe_type is None:
            raise InvalidInput("Pick task, project or habit.")
        st.stage = "category"
        return _enter(s, user, st, reply)

    category = _match(value, CATEGORIES)
    if category is None:
        raise InvalidInput("Pick one of the quest categories.")
    result = lifecycle.organize_activity(
        s, user.id, st.current,
        life_area=st.draft.life_area,
        horizon=st.draft.horizon,
        exe_type=st.draft.exe_type,
        category=category,
        goal_id=st.draft.goal_id,
        priority_tags=tags_from_selection(st.draft.selected_tags),
    )
    st.organized += 1
    st.points += result.score_delta
    reply.say(f"{result.item_id} organized: +{result.score_delta} points.")
    return _next_organize_item(s, user, st, reply)


def _step_habit(s: Session, user: User, st: HabitState, raw: str, reply: Reply) -> Reply:
    if st.stage == "name":
        if not raw:
            raise InvalidInput("The habit needs a name.")
        st.name = raw[:255]
        st.stage = "area"
        return _enter(s, user, st, reply)

    if st.stage == "area":
        st.life_area = _match(raw, LIFE_AREAS)
        if st.life_area is None:
            raise InvalidInput("Pick one of the life areas.")
        st.stage = "variants"
        return _enter(s, user, st, reply)

    tiers = [t.strip() for t in raw.split("/")]
    if len(tiers) != len(DIFFICULTY_TIERS) or not all(tiers):
        raise InvalidInput("I need exactly four non-empty tiers separated by '/'.")
    habit = lifecycle.create_habit(
        s, user.id, st.name, st.life_area,
        **dict(zip(DIFFICULTY_TIERS, tiers)),
    )
    save_state(user, None)
    return reply.say(
        f"Habit {habit.habit_id} created: {habit.name}. Log a session whenever you do it:",
        [
            Choice(label=f"{_label(tier)}: {desc}", value=f"habit_log:{habit.habit_id}:{tier}")
            for tier, desc in zip(DIFFICULTY_TIERS, tiers)
        ],
    )


_STEPS: dict[str, Callable] = {
    "onboarding_mode": _step_mode,
    "onboarding_guided": _step_guided,
    "onboarding_manual": _step_manual,
    "interval": _step_interval,
    "organize": _step_organize,
    "habit": _step_habit,
}

# ──────────────────────────────────────────────────────────────────────────────
# Dispatch
# ──────────────────────────────────────────────────────────────────────────────

def handle(s: Session, user: User, event: InboundEvent) -> Reply:
    """Feed one inbound event to the user's active flow."""
    st = get_state(user)
    reply = Reply()
    if st is None:
        return reply

    if st.prompt == "idle":
        # prompt was never shown for this step (e.g. crash before send)
        return _issue_prompt(s, user, st, reply)

    # awaiting: the prompt for this step is already out, never send it twice
    command = event.command
    if command is not None and st.flow in ENTRY_COMMANDS.get(command, ()):
        debug_log("repeated entry command", {"command": command, "step": st.step}, tag="wizard")
        return reply

    if event.kind == "choice" and event.step != st.step:
        debug_log("stale choice", {"expected": st.step, "got": event.step}, tag="wizard")
        return reply

    raw = event.body
    if event.kind == "text" and raw.startswith("/"):
        return reply.say("Finish this step first, or send /cancel.")

    try:
        return _STEPS[st.flow](s, user, st, raw, reply)
    except InvalidInput as e:
        return _issue_prompt(s, user, st, Reply(), note=str(e))
    except (InvalidState, NotFound) as e:
        if isinstance(st, OrganizeState):
            reply.say(f"Skipping {st.current}: {e.message}")
            return _next_organize_item(s, user, st, reply)
        raise
    except QuestError as e:
        return _issue_prompt(s, user, st, Reply(), note=e.message)
