# questbot/router.py
"""
Inbound event routing: an active wizard flow gets the event, otherwise it is a
direct command (slash command, button callback) or a free-text capture.

handle_event owns the transaction: one commit per event, rollback on any error.
"""
from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from . import lifecycle, summary, wizard
from .db import SessionLocal
from .debug_utils import debug_log
from .errors import QuestError, ValidationError
from .flows import Choice, InboundEvent, Reply
from .message_log import write_log
from .models import DIFFICULTY_TIERS, MOODS, User

HELP_TEXT = (
    "Send me anything on your mind and I'll capture it.\n"
    "/organize – sort captured items into quests\n"
    "/tasks – ready items and focus sessions\n"
    "/habit – create a habit\n"
    "/habits – log a habit session\n"
    "/summary – score, rank and vitality\n"
    "/interval – reminder frequency\n"
    "/start – set up your goals\n"
    "/cancel – stop the current dialog"
)
FAILURE_TEXT = "Something went wrong on my side. Please try again in a moment."

MOOD_EMOJI = {
    "joyful": "😄", "excited": "🤩", "hopeful": "🌤", "calm": "😌", "curious": "🤔",
    "neutral": "😐", "bored": "🥱", "anxious": "😟", "frustrated": "😤",
    "overwhelmed": "😵", "defeated": "😞",
}


def _points(result: lifecycle.TransitionResult) -> str:
    return f"+{result.score_delta} (total {result.user_total})"

# ──────────────────────────────────────────────────────────────────────────────
# Slash commands
# ──────────────────────────────────────────────────────────────────────────────

def _cmd_tasks(s: Session, user: User) -> Reply:
    items = summary.ready_items(s, user.id)
    reply = Reply()
    if not items:
        return reply.say("No ready items. Capture something, then /organize.")
    for a in items[:10]:
        if a.session_start is not None:
            choices = [
                Choice(label="✅ Done", value=f"focus_finish:{a.activity_id}"),
                Choice(label="🏳 Abandon", value=f"abandon:{a.activity_id}"),
            ]
            state = "in focus"
        else:
            choices = [
                Choice(label="▶️ Start focus", value=f"focus_start:{a.activity_id}"),
                Choice(label="🏳 Abandon", value=f"abandon:{a.activity_id}"),
            ]
            state = a.category or a.status
        reply.say(f"{a.activity_id} [{state}] {a.activity}", choices)
    return reply


def _cmd_habits(s: Session, user: User) -> Reply:
    rows = summary.habits(s, user.id)
    reply = Reply()
    if not rows:
        return reply.say("No habits yet. Send /habit to create one.")
    for h in rows:
        reply.say(
            f"{h.habit_id} {h.name} (streak {h.current_streak}, best {h.max_streak})",
            [Choice(label=t.title(), value=f"habit_log:{h.habit_id}:{t}") for t in DIFFICULTY_TIERS],
        )
    return reply


def _cmd_summary(s: Session, user: User) -> Reply:
    return Reply().say(summary.render_summary(summary.summary(s, user)))


COMMANDS = {
    "start": wizard.start_onboarding,
    "organize": wizard.start_organize,
    "habit": wizard.start_habit,
    "interval": wizard.start_interval,
    "tasks": _cmd_tasks,
    "habits": _cmd_habits,
    "summary": _cmd_summary,
    "cancel": wizard.cancel,
    "help": lambda s, user: Reply().say(HELP_TEXT),
}

# ──────────────────────────────────────────────────────────────────────────────
# Button callbacks
# ──────────────────────────────────────────────────────────────────────────────

def _choice_command(s: Session, user: User, value: str) -> Reply:
    action, _, rest = value.partition(":")
    args = rest.split(":") if rest else []

    if action == "cmd" and args and args[0] in COMMANDS:
        return COMMANDS[args[0]](s, user)

    if action == "focus_start" and len(args) == 1:
        r = lifecycle.start_focus(s, user.id, args[0])
        return Reply().say(
            f"⏱ Focus started on {r.item_id}. Tap Done when you finish.",
            [
                Choice(label="✅ Done", value=f"focus_finish:{r.item_id}"),
                Choice(label="🏳 Abandon", value=f"abandon:{r.item_id}"),
            ],
        )

    if action == "focus_finish" and len(args) == 1:
        r = lifecycle.finish_focus(s, user.id, args[0])
        lines = [f"🎯 {r.item_id} complete in {r.details.get('actual_minutes')} min: {_points(r)}"]
        if r.is_late:
            lines.append(f"It was past the deadline. Vitality {r.vitality}/100.")
        if r.bonus_currency_delta:
            lines.append(f"Faster than estimated: +{r.bonus_currency_delta} 💎")
        lines.append("How do you feel now?")
        return Reply().say(
            "\n".join(lines),
            [Choice(label=f"{MOOD_EMOJI[m]} {m}", value=f"evaluate:{r.item_id}:{m}") for m in MOODS],
        )

    if action == "evaluate" and len(args) == 2:
        r = lifecycle.evaluate_activity(s, user.id, args[0], args[1])
        return Reply().say(f"📝 Reflection on {r.item_id}: {_points(r)}")

    if action == "abandon" and len(args) == 1:
        r = lifecycle.abandon_activity(s, user.id, args[0])
        return Reply().say(f"🏳 {r.item_id} abandoned. No points, no penalty.")

    if action == "habit_log" and len(args) == 2:
        r = lifecycle.log_habit(s, user.id, args[0], args[1])
        return Reply().say(
            f"🔁 {r.item_id} logged ({args[1]}): {_points(r)}. "
            f"Streak {r.details['current_streak']}."
        )

    raise ValidationError("That button is no longer valid.")

# ──────────────────────────────────────────────────────────────────────────────
# Dispatch
# ──────────────────────────────────────────────────────────────────────────────

def _dispatch(s: Session, user: User, event: InboundEvent) -> Reply:
    body = event.body
    command = event.command if event.kind == "text" else None

    # /cancel and /help work from inside any dialog
    if command in ("cancel", "help"):
        return COMMANDS[command](s, user)

    if wizard.has_active_flow(user):
        return wizard.handle(s, user, event)

    if event.kind == "choice":
        if event.step is not None:
            return Reply().say("That button is from a dialog that has ended.")
        return _choice_command(s, user, body)

    if command is not None:
        handler = COMMANDS.get(command)
        if handler is None:
            return Reply().say(HELP_TEXT)
        return handler(s, user)

    if not body:
        return Reply().say(HELP_TEXT)
    r = lifecycle.capture_activity(s, user.id, body)
    return Reply().say(f"📥 Captured {r.item_id}: {_points(r)}. Send /organize when you're ready.")


def _ensure(s: Session, event: InboundEvent) -> User:
    return lifecycle.ensure_user(
        s,
        event.telegram_id,
        first_name=event.first_name,
        last_name=event.last_name,
        username=event.username,
        chat_id=event.chat_id,
    )


def _is_duplicate(user: User, event: InboundEvent) -> bool:
    return (
        event.event_id is not None
        and user.last_update_id is not None
        and event.event_id <= user.last_update_id
    )


def _mark_processed(event: InboundEvent) -> Optional[int]:
    """After a rollback: still record that the event was seen so a redelivery is dropped."""
    with SessionLocal() as s:
        user = _ensure(s, event)
        if event.event_id is not None:
            user.last_update_id = event.event_id
        s.commit()
        return user.id


def handle_event(event: InboundEvent) -> Reply:
    user_id: Optional[int] = None
    with SessionLocal() as s:
        try:
            user = _ensure(s, event)
            user_id = user.id
            if _is_duplicate(user, event):
                debug_log("duplicate event dropped", {"event_id": event.event_id}, tag="router")
                s.commit()
                return Reply()
            if event.event_id is not None:
                user.last_update_id = event.event_id
            reply = _dispatch(s, user, event)
            s.commit()
        except QuestError as e:
            s.rollback()
            reply = Reply().say(f"⚠️ {e.message}")
            user_id = _mark_processed(event)
        except Exception as e:
            s.rollback()
            print(f"[router] unexpected error for {event.telegram_id}: {e!r}")
            reply = Reply().say(FAILURE_TEXT)

    reply.user_id = user_id
    write_log(
        "inbound",
        event.body,
        chat_id=event.chat_id,
        user_id=user_id,
        meta={"kind": event.kind, "step": event.step, "event_id": event.event_id},
    )
    return reply
