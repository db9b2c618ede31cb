from datetime import datetime

from eduquest.models.orm import ActiveEffect, Question, User
from eduquest.services.rewards import (
    Reward, apply_level_ups, compute_reward, grant, round_half_up, settle_answer,
)


def _user(**kw):
    defaults = dict(id="u", display_name="u", level=1, exp=0, exp_to_next_level=100, gold=0,
                    total_questions_answered=0, total_correct=0, correct_rate=0.0,
                    current_streak=0, best_streak=0)
    defaults.update(kw)
    return User(**defaults)


def _effect(kind, value):
    return ActiveEffect(player_id="u", item_id=1, effect_type=kind, value=value, expires_at=datetime(2100, 1, 1))


def test_easy_question_without_boosts():
    q = Question(difficulty="easy", type="single_choice", content_text="?", answer_correct="A")
    reward = compute_reward(q, True)
    assert reward == Reward(exp=10, gold=5)

    user = _user()
    grant(user, reward)
    assert user.exp == 10
    assert user.gold == 5


def test_wrong_answer_earns_nothing():
    q = Question(difficulty="hard", type="single_choice", content_text="?", answer_correct="A")
    assert compute_reward(q, False) == Reward()


def test_question_base_overrides_difficulty_table():
    q = Question(difficulty="hard", type="single_choice", content_text="?", answer_correct="A", base_exp=7, base_gold=0)
    assert compute_reward(q, True) == Reward(exp=7, gold=0)


def test_boosts_apply_independently_and_round_half_up():
    q = Question(difficulty="easy", type="single_choice", content_text="?", answer_correct="A", base_exp=5, base_gold=5)
    effects = {"exp_boost": _effect("exp_boost", 1.5)}
    assert compute_reward(q, True, effects) == Reward(exp=8, gold=5)
    effects["gold_boost"] = _effect("gold_boost", 2)
    assert compute_reward(q, True, effects) == Reward(exp=8, gold=10)


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2


def test_multi_level_jump():
    user = _user(exp=95)
    gained = grant(user, Reward(exp=150))
    # 245 - 100 = 145 at level 2 (next 120); 145 - 120 = 25 at level 3 (next 144)
    assert gained == 2
    assert user.level == 3
    assert user.exp == 25
    assert user.exp_to_next_level == 144


def test_no_level_up_below_threshold():
    user = _user(exp=98)
    assert apply_level_ups(user) == 0
    assert user.level == 1


def test_wrong_answer_resets_streak():
    user = _user(current_streak=4, best_streak=4)
    settle_answer(user, False, Reward())
    assert user.current_streak == 0
    assert user.best_streak == 4
    assert user.total_questions_answered == 1
    assert user.correct_rate == 0


def test_shield_preserves_streak_on_wrong_answer():
    user = _user(current_streak=3, best_streak=3, total_questions_answered=3, total_correct=3)
    out = settle_answer(user, False, Reward(), shield_active=True)
    assert out["shield_used"] is True
    assert user.current_streak == 3
    assert user.correct_rate == 75


def test_correct_answer_grants_and_counts():
    user = _user()
    out = settle_answer(user, True, Reward(exp=120, gold=3))
    assert out == {"levels_gained": 1, "shield_used": False}
    assert user.current_streak == 1
    assert user.best_streak == 1
    assert user.correct_rate == 100


def test_subject_stat_starts_at_fifty_and_caps():
    user = _user(subject_stats={"math": 99})
    settle_answer(user, True, Reward(), subject="math")
    settle_answer(user, True, Reward(), subject="math")
    settle_answer(user, True, Reward(), subject="art")
    settle_answer(user, False, Reward(), subject="art")
    assert user.subject_stats == {"math": 100, "art": 52}
