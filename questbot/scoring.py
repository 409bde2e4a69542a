"""
Reward engine: pure score functions for each lifecycle stage.

Capture  → small flat reward for getting something out of your head
Organize → reward for enriching and prioritising, scaled by category
Done     → biggest reward, penalised when late, bonus when fast
Evaluate → closing the loop with a reflection

No database or network access here; everything is deterministic.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

CATEGORY_MULTIPLIER: dict[str, float] = {
    "main-quest": 2.0,
    "side-quest": 1.25,
    "fake-boss": 1.0,         # urgent but not truly important
    "sleeping-dragon": 1.5,   # important and deferred
    "void-filler": 0.5,
}

HORIZON_BONUS: dict[str, int] = {
    "today": 5,
    "week": 3,
    "month": 2,
    "quarter": 1,
    "annum": 0,
    "someday": 0,
}

MOOD_SCORE: dict[str, int] = {
    "joyful": 10,
    "excited": 9,
    "hopeful": 8,
    "calm": 7,
    "curious": 6,
    "neutral": 5,
    "bored": 4,
    "anxious": 3,
    "frustrated": 2,
    "overwhelmed": 1,
    "defeated": 0,
}
MOOD_NEUTRAL = 5

HABIT_BASE: dict[str, int] = {
    "easy": 5,
    "medium": 10,
    "hard": 20,
    "peak": 35,
}

RANKS = (
    "Novice", "Apprentice", "Journeyman", "Adept",
    "Expert", "Master", "Grandmaster", "Legend",
)
SCORE_PER_LEVEL = 500

CAPTURE_BASE = 10
CAPTURE_LINK_BONUS = 5

ORGANIZE_BASE = 20
ORGANIZE_MIN = 5
GOAL_BONUS = 5
DEADLINE_BONUS = 3
ESTIMATE_BONUS = 2
MENTAL_BLOCK_PENALTY = 5

DONE_MULTIPLIER = 1.5
LATE_PENALTY_PER_HOUR = 0.05
LATE_PENALTY_CAP = 0.5
DONE_BLOCK_BONUS = 10
FAST_RATIO = 0.8
FAST_BONUS = 15
ON_ESTIMATE_BONUS = 5

EVALUATE_SHARE = 0.2
EVALUATE_MOOD_FACTOR = 3
EVALUATE_MOOD_CAP = 10
EVALUATE_MIN = 5

STREAK_WEEK = 7
STREAK_STEP = 0.1
STREAK_CAP = 2.0


def round_half_up(value: float) -> int:
    # half-up, so 12.5 -> 13 the way the Mini App displays it
    return int(math.floor(value + 0.5))


def priority_tag_score(tags: Optional[str]) -> int:
    """Count uppercase letters in the first five characters ("IiCUp" -> 3)."""
    if not tags:
        return 0
    return sum(1 for ch in tags[:5] if ch.isalpha() and ch.isupper())


def capture_score(has_link: bool) -> int:
    return CAPTURE_BASE + (CAPTURE_LINK_BONUS if has_link else 0)


def organize_score(
    category: str,
    horizon: str,
    priority_tags: Optional[str],
    has_goal: bool,
    has_deadline: bool,
    has_estimate: bool,
    mental_block: bool,
) -> int:
    raw = (
        ORGANIZE_BASE * CATEGORY_MULTIPLIER.get(category, 1.0)
        + HORIZON_BONUS.get(horizon, 0)
        + priority_tag_score(priority_tags) * 2  # up to +10
        + (GOAL_BONUS if has_goal else 0)
        + (DEADLINE_BONUS if has_deadline else 0)
        + (ESTIMATE_BONUS if has_estimate else 0)
        - (MENTAL_BLOCK_PENALTY if mental_block else 0)
    )
    return max(ORGANIZE_MIN, round_half_up(raw))


@dataclass(frozen=True)
class DoneScore:
    score: int
    is_late: bool
    bonus_currency: int


def done_score(
    organize: int,
    completed_at: datetime,
    deadline: Optional[datetime],
    mental_block: bool,
    actual_minutes: Optional[int],
    estimate_minutes: Optional[int],
) -> DoneScore:
    base = organize * DONE_MULTIPLIER

    is_late = False
    late_penalty = 0.0
    if deadline is not None and completed_at > deadline:
        is_late = True
        hours_over = (completed_at - deadline).total_seconds() / 3600.0
        late_penalty = min(LATE_PENALTY_CAP, hours_over * LATE_PENALTY_PER_HOUR)

    # finishing despite a reported block is rewarded
    block_bonus = DONE_BLOCK_BONUS if mental_block else 0

    speed_bonus = 0
    bonus_currency = 0
    if actual_minutes is not None and estimate_minutes:
        ratio = actual_minutes / estimate_minutes
        if ratio <= FAST_RATIO and not is_late:
            speed_bonus = FAST_BONUS
            bonus_currency = 1
        elif ratio <= 1.0:
            speed_bonus = ON_ESTIMATE_BONUS

    score = max(1, round_half_up(base * (1 - late_penalty) + block_bonus + speed_bonus))
    return DoneScore(score=score, is_late=is_late, bonus_currency=bonus_currency)


def evaluate_score(done: int, delta: int) -> int:
    base = round_half_up(done * EVALUATE_SHARE)
    mood_bonus = min(EVALUATE_MOOD_CAP, delta * EVALUATE_MOOD_FACTOR) if delta > 0 else 0
    return max(EVALUATE_MIN, base + mood_bonus)


def habit_score(tier: str, streak: int) -> int:
    """`streak` is the streak after this session has been counted."""
    base = HABIT_BASE[tier]
    multiplier = min(STREAK_CAP, 1.0 + (max(0, streak) // STREAK_WEEK) * STREAK_STEP)
    return round_half_up(base * multiplier)


def mood_score(label: Optional[str]) -> int:
    if not label:
        return MOOD_NEUTRAL
    return MOOD_SCORE.get(label.strip().lower(), MOOD_NEUTRAL)


def mood_delta(before: Optional[str], after: Optional[str]) -> int:
    return mood_score(after) - mood_score(before)


def level_for_score(total: int) -> int:
    return max(0, total) // SCORE_PER_LEVEL + 1


def rank_for_score(total: int) -> str:
    return RANKS[min(level_for_score(total) - 1, len(RANKS) - 1)]
