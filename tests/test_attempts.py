import pytest
from sqlalchemy import func, select

from eduquest.core import cache
from eduquest.core.config import settings
from eduquest.core.database import utcnow
from eduquest.core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from eduquest.models.orm import QuestionAttempt
from eduquest.services import attempts, sessions


def _attempt_count(db) -> int:
    return db.scalar(select(func.count()).select_from(QuestionAttempt))


def test_question_outside_stage_pool_is_rejected(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage(unit_ids=[1], questions_per_session=2, first_clear_exp=50)
    outsider = make.question(unit_id=99)
    sessions.start_session(db, user, stage.id)

    with pytest.raises(ValidationError) as err:
        attempts.submit_answer(db, fake_redis, notifier, user.id, outsider.id, "B", stage_id=stage.id)
    assert err.value.code == ErrorCodes.QUESTION_NOT_IN_STAGE

    progress = sessions.get_progress(db, user.id, stage.id)
    assert progress.session_total == 0
    assert _attempt_count(db) == 0
    assert user.exp == 0


def test_stage_difficulty_limits_accepted_questions(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage(difficulty=["easy"])
    hard = make.question(difficulty="hard")
    sessions.start_session(db, user, stage.id)
    with pytest.raises(ValidationError):
        attempts.submit_answer(db, fake_redis, notifier, user.id, hard.id, "B", stage_id=stage.id)


def test_question_resolves_once_per_session(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage(questions_per_session=2)
    q = make.question()
    make.question()
    sessions.start_session(db, user, stage.id)

    first = attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B", stage_id=stage.id)
    assert first["session"]["session_total"] == 1

    with pytest.raises(ConflictError) as err:
        attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B", stage_id=stage.id)
    assert err.value.code == ErrorCodes.QUESTION_ALREADY_RESOLVED

    progress = sessions.get_progress(db, user.id, stage.id)
    assert (progress.session_correct, progress.session_total) == (1, 1)
    assert user.exp == 10
    assert _attempt_count(db) == 1


def test_replay_allows_the_same_question_again(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage(questions_per_session=1)
    q = make.question()
    sessions.start_session(db, user, stage.id)
    attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B", stage_id=stage.id)
    sessions.complete_session(db, user, stage.id)

    sessions.start_session(db, user, stage.id)
    again = attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "A", stage_id=stage.id)
    assert again["session"] == {"session_correct": 0, "session_total": 1, "questions_per_session": 1}


def test_stage_answer_without_open_session_conflicts(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage()
    q = make.question()

    with pytest.raises(ConflictError) as err:
        attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B", stage_id=stage.id)
    assert err.value.code == ErrorCodes.SESSION_NOT_IN_PROGRESS
    assert user.exp == 0
    assert cache.rewarded_practice_count(fake_redis, user.id, utcnow()) == 0


def test_stage_answer_into_full_session_conflicts(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage(questions_per_session=1)
    first, second = make.question(), make.question()
    sessions.start_session(db, user, stage.id)
    attempts.submit_answer(db, fake_redis, notifier, user.id, first.id, "B", stage_id=stage.id)

    with pytest.raises(ConflictError) as err:
        attempts.submit_answer(db, fake_redis, notifier, user.id, second.id, "B", stage_id=stage.id)
    assert err.value.code == ErrorCodes.SESSION_NOT_IN_PROGRESS
    assert user.exp == 10


def test_practice_limit_never_overshoots(db, make, fake_redis, notifier, monkeypatch):
    monkeypatch.setattr(settings, "DAILY_PRACTICE_REWARD_LIMIT", 1)
    user = make.user()
    q = make.question()

    first = attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B")
    second = attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B")
    assert first["rewards"] == {"exp": 10, "gold": 5}
    assert second["rewards"] == {"exp": 0, "gold": 0}
    assert second["daily_practice"] == {"rewarded_today": 1, "limit": 1, "limit_reached": True}
    assert cache.rewarded_practice_count(fake_redis, user.id, utcnow()) == 1


def test_wrong_practice_answer_takes_no_slot(db, make, fake_redis, notifier):
    user = make.user()
    q = make.question()
    out = attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "A")
    assert out["daily_practice"]["rewarded_today"] == 0
    assert cache.rewarded_practice_count(fake_redis, user.id, utcnow()) == 0


def test_practice_slot_is_returned_on_rollback(db, make, fake_redis, notifier, monkeypatch):
    monkeypatch.setattr(settings, "DAILY_PRACTICE_REWARD_LIMIT", 1)
    user = make.user()
    q = make.question()
    db.commit()

    attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B")
    assert cache.rewarded_practice_count(fake_redis, user.id, utcnow()) == 1
    db.rollback()
    assert cache.rewarded_practice_count(fake_redis, user.id, utcnow()) == 0

    kept = attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, "B")
    assert kept["rewards"] == {"exp": 10, "gold": 5}
    db.commit()
    assert cache.rewarded_practice_count(fake_redis, user.id, utcnow()) == 1


def test_correct_answers_raise_subject_stat(db, make, fake_redis, notifier, monkeypatch):
    monkeypatch.setattr(settings, "DAILY_PRACTICE_REWARD_LIMIT", 2)
    user = make.user()
    math = make.question(subject="math")
    science = make.question(subject="science")

    for q, answer in ((math, "B"), (math, "B"), (science, "A")):
        attempts.submit_answer(db, fake_redis, notifier, user.id, q.id, answer)
    # past the daily limit: no reward and no stat change
    attempts.submit_answer(db, fake_redis, notifier, user.id, math.id, "B")

    assert attempts.stats(db, user)["subject_stats"] == {"math": 54}


def test_next_stage_question_requires_unlocked_stage(db, make):
    user = make.user()
    make.stage(name="One", order=1, unlock_type="previous")
    second = make.stage(name="Two", order=2, unlock_type="previous")
    make.question()

    with pytest.raises(ValidationError) as err:
        attempts.next_stage_question(db, user, second.id)
    assert err.value.code == ErrorCodes.STAGE_LOCKED


def test_next_stage_question_skips_resolved_questions(db, make, fake_redis, notifier):
    user = make.user()
    stage = make.stage(questions_per_session=3)
    only = make.question()
    sessions.start_session(db, user, stage.id)
    assert attempts.next_stage_question(db, user, stage.id)["question"]["id"] == only.id

    attempts.submit_answer(db, fake_redis, notifier, user.id, only.id, "B", stage_id=stage.id)
    with pytest.raises(NotFoundError):
        attempts.next_stage_question(db, user, stage.id)
