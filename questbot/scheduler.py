# questbot/scheduler.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import func, select

from . import wizard
from .config import Settings, get_settings
from .db import SessionLocal, get_engine
from .models import STATUS_CAPTURED, Activity, JobAudit, User
from .nudges import Sender, compose_reminder, send_message

SWEEP_JOB_ID = "reminder_sweep"

# ──────────────────────────────────────────────────────────────────────────────
# APScheduler setup
# ──────────────────────────────────────────────────────────────────────────────

scheduler: Optional[AsyncIOScheduler] = None


def build_scheduler(settings: Optional[Settings] = None) -> AsyncIOScheduler:
    settings = settings or get_settings()
    jobstores = {"default": SQLAlchemyJobStore(engine=get_engine())}
    executors = {"default": ThreadPoolExecutor(4)}
    sched = AsyncIOScheduler(jobstores=jobstores, executors=executors, timezone="UTC")
    sched.add_job(
        "questbot.scheduler:sweep_reminders",
        trigger="interval",
        minutes=max(1, settings.REMINDER_SWEEP_MINUTES),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    return sched


def start_scheduler(settings: Optional[Settings] = None) -> Optional[AsyncIOScheduler]:
    global scheduler
    settings = settings or get_settings()
    if not settings.SCHEDULER_ENABLED:
        print("[scheduler] disabled by SCHEDULER_ENABLED=false")
        return None
    if scheduler is None:
        scheduler = build_scheduler(settings)
    if not scheduler.running:
        scheduler.start()
        print(f"[scheduler] reminder sweep every {settings.REMINDER_SWEEP_MINUTES} min")
    return scheduler


def stop_scheduler() -> None:
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
    scheduler = None

# ──────────────────────────────────────────────────────────────────────────────
# Utils
# ──────────────────────────────────────────────────────────────────────────────

def _audit(user_id: Optional[int], status: str, payload: dict[str, Any] | None = None, error: str | None = None):
    try:
        with SessionLocal() as s:
            s.add(JobAudit(user_id=user_id, job_name=SWEEP_JOB_ID, status=status,
                           payload=payload or {}, error=error))
            s.commit()
    except Exception as e:
        print(f"[scheduler] audit write failed: {e!r}")


def _reminder_anchor(user: User) -> Optional[datetime]:
    stamps = [t for t in (user.last_reminded_at, user.last_organized_at) if t is not None]
    return max(stamps) if stamps else None


def is_due(user: User, captured_count: int, now: datetime) -> bool:
    """
    Due when reminders are on, something is waiting to be organized and a full
    interval has passed since the last reminder or organize session.
    """
    if not user.reminder_interval_minutes or captured_count <= 0 or not user.chat_id:
        return False
    anchor = _reminder_anchor(user)
    if anchor is None:
        return True
    return now - anchor >= timedelta(minutes=user.reminder_interval_minutes)


def _captured_counts(s) -> dict[int, tuple[int, datetime]]:
    rows = s.execute(
        select(Activity.user_id, func.count(Activity.id), func.min(Activity.captured_at))
        .where(Activity.status == STATUS_CAPTURED)
        .group_by(Activity.user_id)
    ).all()
    return {uid: (count, oldest) for uid, count, oldest in rows}

# ──────────────────────────────────────────────────────────────────────────────
# Sweep
# ──────────────────────────────────────────────────────────────────────────────

def sweep_reminders(now: Optional[datetime] = None, sender: Optional[Sender] = None) -> dict[str, int]:
    """
    One pass over users with reminders on. A failure for one user is printed and
    audited, and the sweep moves on.
    """
    now = now or datetime.utcnow()
    stats = {"sent": 0, "skipped": 0, "errors": 0}

    with SessionLocal() as s:
        counts = _captured_counts(s)
        candidates = s.execute(
            select(User).where(User.reminder_interval_minutes.is_not(None))
        ).scalars().all()
        due: list[tuple[int, str, Optional[str], int, datetime]] = []
        busy: list[int] = []
        for u in candidates:
            count, oldest = counts.get(u.id, (0, None))
            if not is_due(u, count, now):
                continue
            if wizard.has_active_flow(u):
                # never interrupt an open dialog
                busy.append(u.id)
                continue
            due.append((u.id, u.chat_id, u.first_name, count, oldest))

    for user_id in busy:
        stats["skipped"] += 1
        _audit(user_id, "skipped", {"reason": "active_flow"})

    for user_id, chat_id, first_name, count, oldest in due:
        try:
            msg = compose_reminder(first_name, count, oldest_at=oldest, now=now)
            send_message(chat_id, msg, user_id=user_id, category="reminder", sender=sender)
            with SessionLocal() as s:
                u = s.get(User, user_id)
                if u is not None:
                    u.last_reminded_at = now
                    s.commit()
            stats["sent"] += 1
            _audit(user_id, "ok", {"captured": count})
        except Exception as e:
            stats["errors"] += 1
            print(f"[scheduler] reminder failed for user {user_id}: {e!r}")
            _audit(user_id, "error", {"captured": count}, error=repr(e))

    if stats["sent"] or stats["errors"]:
        print(f"[scheduler] sweep done: {stats}")
    return stats
