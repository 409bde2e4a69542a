from __future__ import annotations

from datetime import datetime
from sqlalchemy import (
    JSON, BigInteger, Column, Integer, String, Text, DateTime, Boolean, ForeignKey,
    UniqueConstraint, Index, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# ──────────────────────────────────────────────────────────────────────────────
# Enum labels (kept as plain strings in the DB so the bot and Mini App share them)
# ──────────────────────────────────────────────────────────────────────────────
LIFE_AREAS = ("spiritual", "physical", "mental", "financial", "social", "emotional")
HORIZONS = ("today", "week", "month", "quarter", "annum", "someday")
CATEGORIES = ("main-quest", "side-quest", "fake-boss", "sleeping-dragon", "void-filler")
EXE_TYPES = ("task", "project", "habit")
GOAL_STATUSES = ("active", "completed", "paused", "abandoned")
DIFFICULTY_TIERS = ("easy", "medium", "hard", "peak")
MOODS = (
    "joyful", "excited", "hopeful", "calm", "curious", "neutral",
    "bored", "anxious", "frustrated", "overwhelmed", "defeated",
)

STATUS_CAPTURED = "captured"
STATUS_ORGANIZED = "organized"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETE = "complete"
STATUS_COMPLETE_LATE = "complete-late"
STATUS_ABANDONED = "abandoned"
# Forward-only order; the three terminal states share the last rank.
ACTIVITY_STATUS_ORDER = {
    STATUS_CAPTURED: 0,
    STATUS_ORGANIZED: 1,
    STATUS_IN_PROGRESS: 2,
    STATUS_COMPLETE: 3,
    STATUS_COMPLETE_LATE: 3,
    STATUS_ABANDONED: 3,
}
COMPLETED_STATUSES = (STATUS_COMPLETE, STATUS_COMPLETE_LATE)

VITALITY_MAX = 100

# ──────────────────────────────────────────────────────────────────────────────
# Core
# ──────────────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"
    id          = Column(Integer, primary_key=True)
    telegram_id = Column(String(64), unique=True, nullable=False, index=True)
    chat_id     = Column(String(64), nullable=True)        # where triggers send messages
    first_name  = Column(String(120), nullable=True)
    last_name   = Column(String(120), nullable=True)
    username    = Column(String(120), nullable=True)

    # Running totals
    total_score    = Column(Integer, nullable=False, default=0, server_default=text("0"))
    vitality       = Column(Integer, nullable=False, default=VITALITY_MAX, server_default=text("100"))
    bonus_currency = Column(Integer, nullable=False, default=0, server_default=text("0"))

    # Settings bag
    reminder_interval_minutes = Column(Integer, nullable=True)   # None = reminders off
    last_reminded_at          = Column(DateTime, nullable=True)
    last_organized_at         = Column(DateTime, nullable=True)
    conversation_state        = Column(Text, nullable=True)      # JSON of the active wizard flow
    last_update_id            = Column(BigInteger, nullable=True)   # newest inbound event id processed

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    goals      = relationship("Goal", back_populates="user", cascade="all, delete-orphan")
    activities = relationship("Activity", back_populates="user", cascade="all, delete-orphan")
    habits     = relationship("Habit", back_populates="user", cascade="all, delete-orphan")


class Goal(Base):
    __tablename__ = "goals"
    id          = Column(Integer, primary_key=True)
    user_id     = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    goal_id     = Column(String(16), nullable=False)       # e.g. "G-0001"
    title       = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    life_area   = Column(String(32), nullable=False)
    horizon     = Column(String(16), nullable=False, default="annum")
    category    = Column(String(32), nullable=False, default="main-quest")
    status      = Column(String(16), nullable=False, default="active")
    created_at  = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at  = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="goals")

    __table_args__ = (
        UniqueConstraint("user_id", "goal_id", name="uq_goals_user_goal_id"),
        Index("ix_goals_user_status", "user_id", "status"),
    )


class Activity(Base):
    __tablename__ = "activities"
    id          = Column(Integer, primary_key=True)
    user_id     = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_id = Column(String(16), nullable=False)       # e.g. "A-0042"

    # Capture
    activity       = Column(Text, nullable=False)
    link           = Column(String(1024), nullable=True)
    feeling_before = Column(String(16), nullable=True)
    captured_at    = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Organize
    goal_id       = Column(String(16), nullable=True)      # human-readable goal reference
    priority_tags = Column(String(5), nullable=True)       # e.g. "IncUp"
    life_area     = Column(String(32), nullable=True)
    horizon       = Column(String(16), nullable=True)
    exe_type      = Column(String(16), nullable=True)
    category      = Column(String(32), nullable=True)
    est_minutes   = Column(Integer, nullable=True)
    deadline      = Column(DateTime, nullable=True)
    depends_on    = Column(String(16), nullable=True)      # parent activity_id for sub-items
    mental_block  = Column(Boolean, nullable=False, default=False, server_default=text("false"))

    # Execute
    session_start  = Column(DateTime, nullable=True)
    actual_minutes = Column(Integer, nullable=True)
    completed_at   = Column(DateTime, nullable=True)

    # Evaluate
    feeling_after = Column(String(16), nullable=True)
    mood_delta    = Column(Integer, nullable=True)

    status = Column(String(16), nullable=False, default=STATUS_CAPTURED)

    # Scores, one per stage reached
    capture_score  = Column(Integer, nullable=False, default=0)
    organize_score = Column(Integer, nullable=True)
    done_score     = Column(Integer, nullable=True)
    evaluate_score = Column(Integer, nullable=True)
    total_score    = Column(Integer, nullable=False, default=0)
    bonus_currency = Column(Integer, nullable=False, default=0, server_default=text("0"))

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user     = relationship("User", back_populates="activities")
    sessions = relationship("FocusSession", back_populates="activity", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "activity_id", name="uq_activities_user_activity_id"),
        Index("ix_activities_user_status", "user_id", "status"),
        Index("ix_activities_user_goal", "user_id", "goal_id"),
        Index("ix_activities_user_captured_at", "user_id", "captured_at"),
    )


class Habit(Base):
    __tablename__ = "habits"
    id       = Column(Integer, primary_key=True)
    user_id  = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    habit_id = Column(String(16), nullable=False)          # e.g. "H-0003"
    name     = Column(String(255), nullable=False)
    life_area     = Column(String(32), nullable=False)
    priority_tags = Column(String(5), nullable=True)

    # Difficulty tier descriptions
    easy   = Column(Text, nullable=True)
    medium = Column(Text, nullable=True)
    hard   = Column(Text, nullable=True)
    peak   = Column(Text, nullable=True)

    start_date     = Column(DateTime, default=datetime.utcnow, nullable=False)
    current_streak = Column(Integer, nullable=False, default=0)
    max_streak     = Column(Integer, nullable=False, default=0)
    feeling_before = Column(String(16), nullable=True)     # from the latest log
    feeling_after  = Column(String(16), nullable=True)
    mood_delta     = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="habits")
    logs = relationship("HabitLog", back_populates="habit", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "habit_id", name="uq_habits_user_habit_id"),
    )


class HabitLog(Base):
    __tablename__ = "habit_logs"
    id       = Column(Integer, primary_key=True)
    user_id  = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    habit_pk = Column(Integer, ForeignKey("habits.id", ondelete="CASCADE"), nullable=False, index=True)
    tier     = Column(String(16), nullable=False)
    streak   = Column(Integer, nullable=False)             # streak after this log
    score    = Column(Integer, nullable=False)
    feeling_before = Column(String(16), nullable=True)
    feeling_after  = Column(String(16), nullable=True)
    mood_delta     = Column(Integer, nullable=True)
    mental_block   = Column(Text, nullable=True)
    logged_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    habit = relationship("Habit", back_populates="logs")


class FocusSession(Base):
    __tablename__ = "focus_sessions"
    id           = Column(Integer, primary_key=True)
    user_id      = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_pk  = Column(Integer, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_id  = Column(String(16), nullable=False)
    started_at   = Column(DateTime, nullable=False)
    ended_at     = Column(DateTime, nullable=True)
    duration_minutes   = Column(Integer, nullable=True)
    interrupted_reason = Column(Text, nullable=True)
    completed_task     = Column(Boolean, nullable=False, default=False)

    activity = relationship("Activity", back_populates="sessions")

# ──────────────────────────────────────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────────────────────────────────────
class MessageLog(Base):
    __tablename__ = "message_logs"
    id         = Column(Integer, primary_key=True)
    user_id    = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    chat_id    = Column(String(64), nullable=True, index=True)
    direction  = Column(String(16), nullable=False)   # inbound | outbound
    channel    = Column(String(32), nullable=True)    # e.g. telegram
    text       = Column(Text, nullable=True)
    meta       = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class JobAudit(Base):
    __tablename__ = "job_audits"
    id         = Column(Integer, primary_key=True)
    user_id    = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    job_name   = Column(String(120), nullable=True)
    status     = Column(String(32), nullable=True)    # ok|skipped|error
    payload    = Column(JSONType, nullable=True)
    error      = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
