"""
Lifecycle controller: the only place that moves activities between states and
adds score to a user's totals.

  captured → organized → in-progress → complete | complete-late | abandoned

Every function takes an open Session, locks the owner row, validates, computes
the score and mutates item + owner together, then flushes. The caller commits
once; if anything raises, the caller's session rolls back and no partial score
is recorded.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import scoring
from .errors import InvalidState, NotFound, ValidationError
from .ids import lock_owner, next_activity_id, next_goal_id, next_habit_id
from .models import (
    ACTIVITY_STATUS_ORDER,
    CATEGORIES,
    COMPLETED_STATUSES,
    DIFFICULTY_TIERS,
    EXE_TYPES,
    GOAL_STATUSES,
    HORIZONS,
    LIFE_AREAS,
    MOODS,
    STATUS_ABANDONED,
    STATUS_CAPTURED,
    STATUS_COMPLETE,
    STATUS_COMPLETE_LATE,
    STATUS_IN_PROGRESS,
    STATUS_ORGANIZED,
    Activity,
    FocusSession,
    Goal,
    Habit,
    HabitLog,
    User,
)

LATE_VITALITY_PENALTY = 10
URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
PRIORITY_TAG_LETTERS = "INCUP"  # Importance, Novelty, Control, Urgency, Panic


@dataclass
class TransitionResult:
    """What a write produced, for immediate display."""
    item_id: str
    stage: str
    status: str
    score_delta: int
    item_total: int
    user_total: int
    bonus_currency_delta: int = 0
    vitality: Optional[int] = None
    is_late: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.utcnow()


def _owner(s: Session, user_id: int) -> User:
    user = lock_owner(s, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found.")
    return user


def _activity(s: Session, user_id: int, activity_id: str) -> Activity:
    act = s.execute(
        select(Activity)
        .where(Activity.user_id == user_id, Activity.activity_id == activity_id)
        .with_for_update()
    ).scalar_one_or_none()
    if act is None:
        raise NotFound(f"Activity {activity_id} not found.")
    return act


def get_activity(s: Session, user_id: int, activity_id: str) -> Activity:
    return _activity(s, user_id, activity_id)


def _habit(s: Session, user_id: int, habit_id: str) -> Habit:
    habit = s.execute(
        select(Habit).where(Habit.user_id == user_id, Habit.habit_id == habit_id)
    ).scalar_one_or_none()
    if habit is None:
        raise NotFound(f"Habit {habit_id} not found.")
    return habit


def _goal(s: Session, user_id: int, goal_id: str) -> Goal:
    goal = s.execute(
        select(Goal).where(Goal.user_id == user_id, Goal.goal_id == goal_id)
    ).scalar_one_or_none()
    if goal is None:
        raise NotFound(f"Goal {goal_id} not found.")
    return goal


def _choice(value: Optional[str], allowed: Iterable[str], label: str) -> str:
    norm = (value or "").strip().lower()
    if norm not in allowed:
        raise ValidationError(f"Invalid {label} '{value}'. Choose one of: {', '.join(allowed)}.")
    return norm


def _optional_mood(value: Optional[str], label: str) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    return _choice(value, MOODS, label)


def _optional_minutes(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Estimate must be a whole number of minutes, got '{value}'.")
    if minutes <= 0:
        raise ValidationError("Estimate must be greater than zero.")
    return minutes


def normalize_priority_tags(value: Optional[str]) -> Optional[str]:
    """
    Accept either the 5-char positional form ("IncUp") or a set of selected
    letters/words ("I,U" or "Importance,Urgency") and return the positional form.
    """
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    if len(raw) == 5 and raw.isalpha() and raw.upper() == PRIORITY_TAG_LETTERS:
        return raw
    picked: set[str] = set()
    for tok in re.split(r"[,\s]+", raw):
        tok = tok.strip().upper()
        if not tok:
            continue
        # "IU" is two letters, "Importance" is one word
        picked.update(tok if set(tok) <= set(PRIORITY_TAG_LETTERS) else tok[0])
    unknown = picked - set(PRIORITY_TAG_LETTERS)
    if unknown:
        raise ValidationError(f"Unknown priority tags: {', '.join(sorted(unknown))}.")
    return tags_from_selection(picked)


def tags_from_selection(selected: Iterable[str]) -> str:
    chosen = {t.upper() for t in selected}
    return "".join(ch if ch in chosen else ch.lower() for ch in PRIORITY_TAG_LETTERS)


def _advance(act: Activity, new_status: str) -> None:
    if ACTIVITY_STATUS_ORDER[new_status] <= ACTIVITY_STATUS_ORDER[act.status]:
        raise InvalidState(f"{act.activity_id} cannot move from {act.status} to {new_status}.")
    act.status = new_status


def _award(user: User, act: Optional[Activity], delta: int, now: datetime) -> None:
    user.total_score = int(user.total_score or 0) + delta
    user.updated_at = now
    if act is not None:
        act.total_score = int(act.total_score or 0) + delta
        act.updated_at = now


def _open_session(s: Session, act: Activity) -> Optional[FocusSession]:
    return s.execute(
        select(FocusSession)
        .where(FocusSession.activity_pk == act.id, FocusSession.ended_at.is_(None))
        .order_by(FocusSession.started_at.desc())
    ).scalars().first()


def extract_link(text: str) -> Optional[str]:
    match = URL_RE.search(text or "")
    return match.group(0) if match else None

# ──────────────────────────────────────────────────────────────────────────────
# Users
# ──────────────────────────────────────────────────────────────────────────────

def ensure_user(
    s: Session,
    telegram_id: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    username: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> User:
    """Create the user on first contact; refresh profile fields otherwise."""
    telegram_id = str(telegram_id)
    user = s.execute(select(User).where(User.telegram_id == telegram_id)).scalar_one_or_none()
    now = datetime.utcnow()
    if user is None:
        user = User(
            telegram_id=telegram_id,
            chat_id=str(chat_id) if chat_id is not None else None,
            first_name=first_name,
            last_name=last_name,
            username=username,
            total_score=0,
            vitality=100,
            bonus_currency=0,
            created_at=now,
            updated_at=now,
        )
        s.add(user)
        s.flush()
        return user
    if first_name is not None:
        user.first_name = first_name
    if last_name is not None:
        user.last_name = last_name
    if username is not None:
        user.username = username
    if chat_id is not None:
        user.chat_id = str(chat_id)
    return user


def get_user_by_telegram_id(s: Session, telegram_id: str) -> User:
    user = s.execute(select(User).where(User.telegram_id == str(telegram_id))).scalar_one_or_none()
    if user is None:
        raise NotFound(f"User {telegram_id} not found.")
    return user


def set_reminder_interval(s: Session, user_id: int, minutes: Optional[int]) -> User:
    user = _owner(s, user_id)
    if minutes is not None and minutes <= 0:
        raise ValidationError("Reminder interval must be positive.")
    user.reminder_interval_minutes = minutes
    return user


def mark_organized(s: Session, user_id: int, now: Optional[datetime] = None) -> None:
    user = _owner(s, user_id)
    user.last_organized_at = _now(now)

# ──────────────────────────────────────────────────────────────────────────────
# Capture
# ──────────────────────────────────────────────────────────────────────────────

def capture_activity(
    s: Session,
    user_id: int,
    text: str,
    link: Optional[str] = None,
    feeling_before: Optional[str] = None,
    depends_on: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    body = (text or "").strip()
    if not body:
        raise ValidationError("Nothing to capture: the message is empty.")
    now = _now(now)
    user = _owner(s, user_id)
    link = (link or "").strip() or extract_link(body)
    points = scoring.capture_score(has_link=bool(link))
    act = Activity(
        user_id=user.id,
        activity_id=next_activity_id(s, user.id),
        activity=body,
        link=link,
        feeling_before=_optional_mood(feeling_before, "feeling"),
        depends_on=depends_on,
        status=STATUS_CAPTURED,
        captured_at=now,
        capture_score=points,
        total_score=0,
        bonus_currency=0,
        updated_at=now,
    )
    s.add(act)
    _award(user, act, points, now)
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="capture",
        status=act.status,
        score_delta=points,
        item_total=act.total_score,
        user_total=user.total_score,
        vitality=user.vitality,
        details={"link": link},
    )


def split_activity(
    s: Session,
    user_id: int,
    activity_id: str,
    subtasks: list[str],
    now: Optional[datetime] = None,
) -> list[TransitionResult]:
    """Break an item into sub-items; each is a normal capture pointing at the parent."""
    parent = _activity(s, user_id, activity_id)
    if ACTIVITY_STATUS_ORDER[parent.status] >= ACTIVITY_STATUS_ORDER[STATUS_COMPLETE]:
        raise InvalidState(f"{activity_id} is already {parent.status}; nothing to split.")
    items = [t.strip() for t in subtasks or [] if t and t.strip()]
    if not items:
        raise ValidationError("Give at least one sub-task.")
    return [
        capture_activity(s, user_id, item, depends_on=parent.activity_id, now=now)
        for item in items
    ]

# ──────────────────────────────────────────────────────────────────────────────
# Organize
# ──────────────────────────────────────────────────────────────────────────────

def organize_activity(
    s: Session,
    user_id: int,
    activity_id: str,
    *,
    life_area: str,
    horizon: str,
    exe_type: str,
    category: str,
    goal_id: Optional[str] = None,
    priority_tags: Optional[str] = None,
    deadline: Optional[datetime] = None,
    est_minutes: Optional[int] = None,
    mental_block: Optional[bool] = None,
    feeling_before: Optional[str] = None,
    depends_on: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = _now(now)
    user = _owner(s, user_id)
    act = _activity(s, user_id, activity_id)
    if act.status != STATUS_CAPTURED:
        raise InvalidState(f"{activity_id} is {act.status}; only captured items can be organized.")

    life_area = _choice(life_area, LIFE_AREAS, "life area")
    horizon = _choice(horizon, HORIZONS, "horizon")
    exe_type = _choice(exe_type, EXE_TYPES, "execution type")
    category = _choice(category, CATEGORIES, "category")
    tags = normalize_priority_tags(priority_tags)
    est = _optional_minutes(est_minutes) if est_minutes is not None else act.est_minutes
    feeling = _optional_mood(feeling_before, "feeling") or act.feeling_before
    block = bool(act.mental_block) if mental_block is None else bool(mental_block)
    deadline = deadline if deadline is not None else act.deadline
    if goal_id:
        goal_id = _goal(s, user_id, goal_id).goal_id
    if depends_on:
        depends_on = _activity(s, user_id, depends_on).activity_id

    points = scoring.organize_score(
        category=category,
        horizon=horizon,
        priority_tags=tags,
        has_goal=bool(goal_id),
        has_deadline=deadline is not None,
        has_estimate=bool(est),
        mental_block=block,
    )

    act.goal_id = goal_id or None
    act.priority_tags = tags
    act.life_area = life_area
    act.horizon = horizon
    act.exe_type = exe_type
    act.category = category
    act.deadline = deadline
    act.est_minutes = est
    act.mental_block = block
    act.feeling_before = feeling
    act.depends_on = depends_on or act.depends_on
    act.organize_score = points
    _advance(act, STATUS_ORGANIZED)
    _award(user, act, points, now)
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="organize",
        status=act.status,
        score_delta=points,
        item_total=act.total_score,
        user_total=user.total_score,
        vitality=user.vitality,
    )


def enrich_activity(
    s: Session,
    user_id: int,
    activity_id: str,
    *,
    feeling_before: Optional[str] = None,
    est_minutes: Any = None,
    priority_tags: Optional[str] = None,
    deadline: Optional[datetime] = None,
    mental_block: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Patch planning fields on an item that has not started; never rescored."""
    now = _now(now)
    user = _owner(s, user_id)
    act = _activity(s, user_id, activity_id)
    if act.status not in (STATUS_CAPTURED, STATUS_ORGANIZED):
        raise InvalidState(f"{activity_id} is {act.status}; only items not yet started can be enriched.")
    if feeling_before is not None:
        act.feeling_before = _optional_mood(feeling_before, "feeling")
    if est_minutes is not None:
        act.est_minutes = _optional_minutes(est_minutes)
    if priority_tags is not None:
        act.priority_tags = normalize_priority_tags(priority_tags)
    if deadline is not None:
        act.deadline = deadline
    if mental_block is not None:
        act.mental_block = bool(mental_block)
    act.updated_at = now
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="enrich",
        status=act.status,
        score_delta=0,
        item_total=act.total_score,
        user_total=user.total_score,
        vitality=user.vitality,
    )

# ──────────────────────────────────────────────────────────────────────────────
# Execute
# ──────────────────────────────────────────────────────────────────────────────

def start_focus(
    s: Session,
    user_id: int,
    activity_id: str,
    feeling_before: Optional[str] = None,
    est_minutes: Any = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = _now(now)
    user = _owner(s, user_id)
    act = _activity(s, user_id, activity_id)
    if act.status != STATUS_ORGANIZED:
        raise InvalidState(f"{activity_id} is {act.status}; a focus session needs an organized item.")
    if feeling_before is not None:
        act.feeling_before = _optional_mood(feeling_before, "feeling")
    if est_minutes is not None:
        act.est_minutes = _optional_minutes(est_minutes)
    act.session_start = now
    _advance(act, STATUS_IN_PROGRESS)
    act.updated_at = now
    s.add(FocusSession(
        user_id=user.id,
        activity_pk=act.id,
        activity_id=act.activity_id,
        started_at=now,
        completed_task=False,
    ))
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="start",
        status=act.status,
        score_delta=0,
        item_total=act.total_score,
        user_total=user.total_score,
        vitality=user.vitality,
        details={"session_start": now.isoformat()},
    )


def finish_focus(
    s: Session,
    user_id: int,
    activity_id: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = _now(now)
    user = _owner(s, user_id)
    act = _activity(s, user_id, activity_id)
    if act.status != STATUS_IN_PROGRESS or act.session_start is None:
        raise InvalidState(f"{activity_id} has no active focus session.")

    actual = max(0, scoring.round_half_up((now - act.session_start).total_seconds() / 60.0))
    result = scoring.done_score(
        organize=act.organize_score or 0,
        completed_at=now,
        deadline=act.deadline,
        mental_block=bool(act.mental_block),
        actual_minutes=actual,
        estimate_minutes=act.est_minutes,
    )

    act.actual_minutes = actual
    act.completed_at = now
    act.session_start = None
    act.done_score = result.score
    act.bonus_currency = int(act.bonus_currency or 0) + result.bonus_currency
    _advance(act, STATUS_COMPLETE_LATE if result.is_late else STATUS_COMPLETE)
    _award(user, act, result.score, now)
    user.bonus_currency = int(user.bonus_currency or 0) + result.bonus_currency
    if result.is_late:
        user.vitality = max(0, int(user.vitality or 0) - LATE_VITALITY_PENALTY)

    fs = _open_session(s, act)
    if fs is not None:
        fs.ended_at = now
        fs.duration_minutes = actual
        fs.completed_task = True
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="done",
        status=act.status,
        score_delta=result.score,
        item_total=act.total_score,
        user_total=user.total_score,
        bonus_currency_delta=result.bonus_currency,
        vitality=user.vitality,
        is_late=result.is_late,
        details={"actual_minutes": actual},
    )


def abandon_activity(
    s: Session,
    user_id: int,
    activity_id: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Explicit give-up; never triggered automatically and never scored."""
    now = _now(now)
    user = _owner(s, user_id)
    act = _activity(s, user_id, activity_id)
    _advance(act, STATUS_ABANDONED)
    act.session_start = None
    act.updated_at = now
    fs = _open_session(s, act)
    if fs is not None:
        fs.ended_at = now
        fs.duration_minutes = max(0, scoring.round_half_up((now - fs.started_at).total_seconds() / 60.0))
        fs.interrupted_reason = reason or "abandoned"
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="abandon",
        status=act.status,
        score_delta=0,
        item_total=act.total_score,
        user_total=user.total_score,
        vitality=user.vitality,
    )

# ──────────────────────────────────────────────────────────────────────────────
# Evaluate
# ──────────────────────────────────────────────────────────────────────────────

def evaluate_activity(
    s: Session,
    user_id: int,
    activity_id: str,
    feeling_after: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = _now(now)
    user = _owner(s, user_id)
    act = _activity(s, user_id, activity_id)
    if act.status not in COMPLETED_STATUSES or act.done_score is None:
        raise InvalidState(f"{activity_id} is {act.status}; only completed items can be evaluated.")
    if act.evaluate_score is not None:
        raise InvalidState(f"{activity_id} has already been evaluated.")
    feeling_after = _choice(feeling_after, MOODS, "feeling")

    delta = scoring.mood_delta(act.feeling_before, feeling_after)
    points = scoring.evaluate_score(act.done_score, delta)
    act.feeling_after = feeling_after
    act.mood_delta = delta
    act.evaluate_score = points
    _award(user, act, points, now)
    s.flush()
    return TransitionResult(
        item_id=act.activity_id,
        stage="evaluate",
        status=act.status,
        score_delta=points,
        item_total=act.total_score,
        user_total=user.total_score,
        bonus_currency_delta=0,
        vitality=user.vitality,
        details={"mood_delta": delta, "bonus_currency": act.bonus_currency},
    )

# ──────────────────────────────────────────────────────────────────────────────
# Habits
# ──────────────────────────────────────────────────────────────────────────────

def create_habit(
    s: Session,
    user_id: int,
    name: str,
    life_area: str,
    easy: Optional[str] = None,
    medium: Optional[str] = None,
    hard: Optional[str] = None,
    peak: Optional[str] = None,
    priority_tags: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Habit:
    now = _now(now)
    title = (name or "").strip()
    if not title:
        raise ValidationError("A habit needs a name.")
    user = _owner(s, user_id)
    habit = Habit(
        user_id=user.id,
        habit_id=next_habit_id(s, user.id),
        name=title,
        life_area=_choice(life_area, LIFE_AREAS, "life area"),
        priority_tags=normalize_priority_tags(priority_tags),
        easy=easy,
        medium=medium,
        hard=hard,
        peak=peak,
        start_date=now,
        current_streak=0,
        max_streak=0,
        created_at=now,
        updated_at=now,
    )
    s.add(habit)
    s.flush()
    return habit


def log_habit(
    s: Session,
    user_id: int,
    habit_id: str,
    tier: str,
    feeling_before: Optional[str] = None,
    feeling_after: Optional[str] = None,
    mental_block: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = _now(now)
    user = _owner(s, user_id)
    habit = _habit(s, user_id, habit_id)
    tier = _choice(tier, DIFFICULTY_TIERS, "difficulty")
    before = _optional_mood(feeling_before, "feeling before")
    after = _optional_mood(feeling_after, "feeling after")

    streak = int(habit.current_streak or 0) + 1
    points = scoring.habit_score(tier, streak)
    delta = scoring.mood_delta(before, after) if (before or after) else None

    habit.current_streak = streak
    habit.max_streak = max(streak, int(habit.max_streak or 0))
    habit.feeling_before = before
    habit.feeling_after = after
    habit.mood_delta = delta
    habit.updated_at = now
    s.add(HabitLog(
        user_id=user.id,
        habit_pk=habit.id,
        tier=tier,
        streak=streak,
        score=points,
        feeling_before=before,
        feeling_after=after,
        mood_delta=delta,
        mental_block=(mental_block or "").strip() or None,
        logged_at=now,
    ))
    _award(user, None, points, now)
    s.flush()
    return TransitionResult(
        item_id=habit.habit_id,
        stage="habit",
        status="logged",
        score_delta=points,
        item_total=points,
        user_total=user.total_score,
        vitality=user.vitality,
        details={"current_streak": streak, "max_streak": habit.max_streak},
    )

# ──────────────────────────────────────────────────────────────────────────────
# Goals
# ──────────────────────────────────────────────────────────────────────────────

def create_goal(
    s: Session,
    user_id: int,
    title: str,
    life_area: str,
    horizon: str = "annum",
    category: str = "main-quest",
    description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Goal:
    now = _now(now)
    text = (title or "").strip()
    if not text:
        raise ValidationError("A goal needs a title.")
    user = _owner(s, user_id)
    goal = Goal(
        user_id=user.id,
        goal_id=next_goal_id(s, user.id),
        title=text[:255],
        description=description,
        life_area=_choice(life_area, LIFE_AREAS, "life area"),
        horizon=_choice(horizon, HORIZONS, "horizon"),
        category=_choice(category, CATEGORIES, "category"),
        status="active",
        created_at=now,
        updated_at=now,
    )
    s.add(goal)
    s.flush()
    return goal


def create_goals(s: Session, user_id: int, entries: list[dict[str, Any]], now: Optional[datetime] = None) -> list[Goal]:
    """Batch insert used at the end of onboarding; ids stay sequential."""
    return [create_goal(s, user_id, now=now, **entry) for entry in entries]


def update_goal(
    s: Session,
    user_id: int,
    goal_id: str,
    *,
    title: Optional[str] = None,
    description: Optional[str] = None,
    horizon: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Goal:
    """Plain field patch; status changes carry no scoring side effects."""
    goal = _goal(s, user_id, goal_id)
    if title is not None:
        if not title.strip():
            raise ValidationError("A goal needs a title.")
        goal.title = title.strip()[:255]
    if description is not None:
        goal.description = description
    if horizon is not None:
        goal.horizon = _choice(horizon, HORIZONS, "horizon")
    if category is not None:
        goal.category = _choice(category, CATEGORIES, "category")
    if status is not None:
        goal.status = _choice(status, GOAL_STATUSES, "goal status")
    goal.updated_at = _now(now)
    s.flush()
    return goal


def active_goals(s: Session, user_id: int) -> list[Goal]:
    return list(
        s.execute(
            select(Goal)
            .where(Goal.user_id == user_id, Goal.status == "active")
            .order_by(Goal.created_at.asc(), Goal.id.asc())
        ).scalars()
    )


def captured_queue(s: Session, user_id: int) -> list[Activity]:
    return list(
        s.execute(
            select(Activity)
            .where(Activity.user_id == user_id, Activity.status == STATUS_CAPTURED)
            .order_by(Activity.captured_at.asc(), Activity.id.asc())
        ).scalars()
    )
