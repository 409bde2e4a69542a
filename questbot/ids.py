"""
Human-readable ids per user: G-0001 (goals), A-0042 (activities), H-0003 (habits).

Next id = highest existing numeric suffix for the owner + 1, zero-padded to four
digits. Call inside the transaction that inserts the row, after lock_owner(),
so two concurrent creates for the same owner cannot pick the same number.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Activity, Goal, Habit, User

KIND_GOAL = "G"
KIND_ACTIVITY = "A"
KIND_HABIT = "H"

_KIND_COLUMNS = {
    KIND_GOAL: (Goal, Goal.goal_id),
    KIND_ACTIVITY: (Activity, Activity.activity_id),
    KIND_HABIT: (Habit, Habit.habit_id),
}


def pad(n: int) -> str:
    return str(n).zfill(4)


def extract_num(human_id: str | None) -> int:
    """"G-0042" -> 42; anything malformed -> 0."""
    if not human_id:
        return 0
    last = str(human_id).rsplit("-", 1)[-1].strip()
    if not last.isdigit():
        return 0
    return int(last)


def format_id(kind: str, n: int) -> str:
    return f"{kind}-{pad(n)}"


def lock_owner(session: Session, user_id: int) -> User | None:
    """
    Row-lock the owning user for the rest of the transaction (no-op on SQLite,
    which serialises writers anyway). Lifecycle transitions take this lock too.
    """
    return session.execute(
        select(User).where(User.id == user_id).with_for_update()
    ).scalar_one_or_none()


def next_id(session: Session, user_id: int, kind: str) -> str:
    model, column = _KIND_COLUMNS[kind]
    session.flush()  # include rows added earlier in this transaction
    existing = session.execute(select(column).where(model.user_id == user_id)).scalars().all()
    highest = max((extract_num(v) for v in existing), default=0)
    return format_id(kind, highest + 1)


def next_goal_id(session: Session, user_id: int) -> str:
    return next_id(session, user_id, KIND_GOAL)


def next_activity_id(session: Session, user_id: int) -> str:
    return next_id(session, user_id, KIND_ACTIVITY)


def next_habit_id(session: Session, user_id: int) -> str:
    return next_id(session, user_id, KIND_HABIT)
