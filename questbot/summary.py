"""
Read models for the Mini App and the bot's /summary, /tasks and /habits replies.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import scoring
from .errors import ValidationError
from .models import (
    COMPLETED_STATUSES,
    GOAL_STATUSES,
    STATUS_IN_PROGRESS,
    STATUS_ORGANIZED,
    Activity,
    Goal,
    Habit,
    User,
)


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def activity_to_dict(a: Activity) -> dict[str, Any]:
    return {
        "activity_id": a.activity_id,
        "activity": a.activity,
        "link": a.link,
        "status": a.status,
        "goal_id": a.goal_id,
        "priority_tags": a.priority_tags,
        "life_area": a.life_area,
        "horizon": a.horizon,
        "exe_type": a.exe_type,
        "category": a.category,
        "est_minutes": a.est_minutes,
        "deadline": _iso(a.deadline),
        "depends_on": a.depends_on,
        "mental_block": bool(a.mental_block),
        "feeling_before": a.feeling_before,
        "feeling_after": a.feeling_after,
        "mood_delta": a.mood_delta,
        "captured_at": _iso(a.captured_at),
        "session_start": _iso(a.session_start),
        "completed_at": _iso(a.completed_at),
        "actual_minutes": a.actual_minutes,
        "scores": {
            "capture": a.capture_score,
            "organize": a.organize_score,
            "done": a.done_score,
            "evaluate": a.evaluate_score,
            "total": a.total_score,
        },
        "bonus_currency": a.bonus_currency,
    }


def goal_to_dict(g: Goal) -> dict[str, Any]:
    return {
        "goal_id": g.goal_id,
        "title": g.title,
        "description": g.description,
        "life_area": g.life_area,
        "horizon": g.horizon,
        "category": g.category,
        "status": g.status,
        "created_at": _iso(g.created_at),
    }


def habit_to_dict(h: Habit) -> dict[str, Any]:
    return {
        "habit_id": h.habit_id,
        "name": h.name,
        "life_area": h.life_area,
        "priority_tags": h.priority_tags,
        "tiers": {"easy": h.easy, "medium": h.medium, "hard": h.hard, "peak": h.peak},
        "current_streak": h.current_streak,
        "max_streak": h.max_streak,
        "feeling_before": h.feeling_before,
        "feeling_after": h.feeling_after,
        "mood_delta": h.mood_delta,
        "start_date": _iso(h.start_date),
    }


def ready_items(s: Session, user_id: int) -> list[Activity]:
    """Organized and in-progress items; in-progress first, then oldest capture first."""
    rows = s.execute(
        select(Activity)
        .where(Activity.user_id == user_id, Activity.status.in_((STATUS_ORGANIZED, STATUS_IN_PROGRESS)))
        .order_by(Activity.captured_at.asc(), Activity.id.asc())
    ).scalars().all()
    return sorted(rows, key=lambda a: 0 if a.status == STATUS_IN_PROGRESS else 1)


def completed_items(s: Session, user_id: int, limit: int = 50) -> list[Activity]:
    return list(
        s.execute(
            select(Activity)
            .where(Activity.user_id == user_id, Activity.status.in_(COMPLETED_STATUSES))
            .order_by(Activity.completed_at.desc(), Activity.id.desc())
            .limit(limit)
        ).scalars()
    )


def goals(s: Session, user_id: int, status: Optional[str] = "active") -> list[Goal]:
    q = select(Goal).where(Goal.user_id == user_id)
    if status:
        if status not in GOAL_STATUSES:
            raise ValidationError(f"Unknown goal status '{status}'.")
        q = q.where(Goal.status == status)
    return list(s.execute(q.order_by(Goal.created_at.asc(), Goal.id.asc())).scalars())


def habits(s: Session, user_id: int) -> list[Habit]:
    return list(
        s.execute(select(Habit).where(Habit.user_id == user_id).order_by(Habit.id.asc())).scalars()
    )


def summary(s: Session, user: User) -> dict[str, Any]:
    counts = dict(
        s.execute(
            select(Activity.status, func.count(Activity.id))
            .where(Activity.user_id == user.id)
            .group_by(Activity.status)
        ).all()
    )
    habit_count = s.execute(select(func.count(Habit.id)).where(Habit.user_id == user.id)).scalar_one()
    goal_count = s.execute(
        select(func.count(Goal.id)).where(Goal.user_id == user.id, Goal.status == "active")
    ).scalar_one()
    total = int(user.total_score or 0)
    return {
        "telegram_id": user.telegram_id,
        "first_name": user.first_name,
        "total_score": total,
        "level": scoring.level_for_score(total),
        "rank": scoring.rank_for_score(total),
        "vitality": user.vitality,
        "bonus_currency": user.bonus_currency,
        "status_counts": counts,
        "habits": habit_count,
        "active_goals": goal_count,
        "reminder_interval_minutes": user.reminder_interval_minutes,
    }


def render_summary(data: dict[str, Any]) -> str:
    counts = data["status_counts"]
    done = sum(counts.get(st, 0) for st in COMPLETED_STATUSES)
    return (
        f"🏆 {data['rank']} (level {data['level']}): {data['total_score']} points\n"
        f"❤️ Vitality {data['vitality']}/100   💎 {data['bonus_currency']}\n"
        f"Captured {counts.get('captured', 0)} · Ready {counts.get(STATUS_ORGANIZED, 0)} · "
        f"In progress {counts.get(STATUS_IN_PROGRESS, 0)} · Done {done}\n"
        f"Active goals {data['active_goals']} · Habits {data['habits']}"
    )
