"""
Reward calculation and profile settlement.

Amounts are always whole numbers: multipliers are applied to the base value
and the result is rounded half-up (2.5 -> 3), for exp and gold alike.
"""
import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from eduquest.core.config import settings
from eduquest.models.orm import ActiveEffect, EffectType, Question, User

logger = logging.getLogger(__name__)

# difficulty -> (exp, gold)
DIFFICULTY_REWARDS = MappingProxyType({
    "easy": (10, 5),
    "medium": (20, 10),
    "hard": (30, 15),
})

# per-subject mastery score: starts at 50, +2 per rewarded correct answer, capped at 100
SUBJECT_STAT_START = 50
SUBJECT_STAT_STEP = 2
SUBJECT_STAT_MAX = 100


@dataclass(frozen=True)
class Reward:
    exp: int = 0
    gold: int = 0

    def as_dict(self) -> dict:
        return {"exp": self.exp, "gold": self.gold}


NO_REWARD = Reward()


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def base_reward(question: Question) -> Reward:
    default_exp, default_gold = DIFFICULTY_REWARDS.get(question.difficulty, DIFFICULTY_REWARDS["easy"])
    exp = question.base_exp if question.base_exp is not None else default_exp
    gold = question.base_gold if question.base_gold is not None else default_gold
    return Reward(exp=exp, gold=gold)


def compute_reward(question: Question, is_correct: bool, effects: Optional[Mapping[str, ActiveEffect]] = None) -> Reward:
    """Reward for one answer, with any active exp/gold boosts applied independently."""
    if not is_correct:
        return NO_REWARD
    effects = effects or {}
    base = base_reward(question)
    exp, gold = float(base.exp), float(base.gold)
    boost = effects.get(EffectType.EXP_BOOST.value)
    if boost is not None:
        exp *= boost.value
    boost = effects.get(EffectType.GOLD_BOOST.value)
    if boost is not None:
        gold *= boost.value
    return Reward(exp=round_half_up(exp), gold=round_half_up(gold))


def next_threshold(current: int) -> int:
    return max(1, math.floor(Decimal(current) * Decimal(str(settings.LEVEL_UP_GROWTH))))


def apply_level_ups(user: User) -> int:
    """Convert surplus exp into levels; returns the number of levels gained."""
    gained = 0
    while user.exp >= user.exp_to_next_level:
        user.exp -= user.exp_to_next_level
        user.level += 1
        user.exp_to_next_level = next_threshold(user.exp_to_next_level)
        gained += 1
    if gained:
        logger.info(f"User {user.id} levelled up {gained}x to level {user.level}")
    return gained


def grant(user: User, reward: Reward) -> int:
    user.exp += reward.exp
    user.gold += reward.gold
    return apply_level_ups(user)


def bump_subject_stat(user: User, subject: str) -> int:
    stats = dict(user.subject_stats or {})
    stats[subject] = min(SUBJECT_STAT_MAX, stats.get(subject, SUBJECT_STAT_START) + SUBJECT_STAT_STEP)
    # reassign so the JSON column is flagged dirty
    user.subject_stats = stats
    return stats[subject]


def settle_answer(user: User, is_correct: bool, reward: Reward, shield_active: bool = False,
                  subject: Optional[str] = None) -> dict:
    """Update the profile's running aggregates after one answer.

    A wrong answer resets the correct streak unless a shield is active. A
    correct answer raises the mastery score of ``subject`` when one is given.
    """
    user.total_questions_answered += 1
    shield_used = False
    if is_correct:
        user.total_correct += 1
        user.current_streak += 1
        user.best_streak = max(user.best_streak, user.current_streak)
        if subject:
            bump_subject_stat(user, subject)
    elif shield_active and user.current_streak > 0:
        shield_used = True
    else:
        user.current_streak = 0
    user.correct_rate = float(round_half_up(user.total_correct / user.total_questions_answered * 100))
    levels = grant(user, reward) if is_correct else 0
    return {"levels_gained": levels, "shield_used": shield_used}
