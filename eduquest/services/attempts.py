"""
Answer submission: evaluate, log, reward and advance the stage session.

Everything runs inside the request's single database transaction, so the
attempt row, question statistics, profile update and session counters are
committed together or not at all.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

import redis
from sqlalchemy import case, event, func, select, update
from sqlalchemy.orm import Session

from eduquest.core import cache
from eduquest.core.config import settings
from eduquest.core.database import utcnow
from eduquest.core.errors import ErrorCodes, NotFoundError, ValidationError
from eduquest.models.orm import EffectType, Question, QuestionAttempt, User
from eduquest.services import sessions
from eduquest.services.evaluator import evaluate
from eduquest.services.items import active_effects
from eduquest.services.notifications import EventNotifier
from eduquest.services.rewards import NO_REWARD, compute_reward, settle_answer
from eduquest.services.selector import QuestionFilter, select_question

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id: str, lock: bool = False) -> User:
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    user = db.scalars(stmt).first()
    if user is None:
        raise NotFoundError("User not found", ErrorCodes.USER_NOT_FOUND)
    return user


def question_payload(question: Question) -> dict:
    """Client view of a question; the answer key is never included."""
    return {
        "id": question.id,
        "type": question.type,
        "difficulty": question.difficulty,
        "content_text": question.content_text,
        "content_media": question.content_media or [],
        "options": question.options or [],
        "subject_id": question.subject_id,
        "unit_id": question.unit_id,
    }


def next_stage_question(db: Session, user: User, stage_id: int) -> dict:
    stage = sessions.get_active_stage(db, stage_id)
    sessions.ensure_unlocked(db, user, stage)
    progress = sessions.get_progress(db, user.id, stage.id)
    seen = sessions.answered_in_session(db, progress)
    # a question resolves once per session, so never serve it again
    question = select_question(db, QuestionFilter(stage_id=stage.id), exclude_ids=seen, allow_repeats=False)
    snapshot = sessions.progress_snapshot(progress)
    return {
        "question": question_payload(question),
        "progress": {
            "session_correct": snapshot["session_correct"],
            "session_total": snapshot["session_total"],
            "questions_per_session": stage.questions_per_session,
        },
    }


def random_question(db: Session, flt: QuestionFilter, exclude_ids: Iterable[int] = ()) -> dict:
    return question_payload(select_question(db, flt, exclude_ids))


def _update_question_stats(db: Session, question_id: int, is_correct: bool, time_spent: int) -> None:
    # single statement so concurrent attempts from other students never lose an increment
    db.execute(
        update(Question)
        .where(Question.id == question_id)
        .values(
            avg_time_seconds=(Question.avg_time_seconds * Question.total_attempts + time_spent) / (Question.total_attempts + 1),
            total_attempts=Question.total_attempts + 1,
            correct_count=Question.correct_count + (1 if is_correct else 0),
        )
        .execution_options(synchronize_session=False)
    )


def _on_rollback(db: Session, undo: Callable[[], None]) -> None:
    """Run ``undo`` if the current transaction rolls back instead of committing."""
    state = {"open": True}

    def settle(committed: bool) -> Callable:
        def handler(_session) -> None:
            if state["open"]:
                state["open"] = False
                if not committed:
                    undo()
        return handler

    event.listen(db, "after_commit", settle(True), once=True)
    event.listen(db, "after_rollback", settle(False), once=True)


def _claim_practice_reward(db: Session, r: redis.Redis, student_id: str, now: datetime) -> dict:
    """Take one of today's rewarded quick-practice slots; the slot is handed back if the transaction rolls back."""
    limit = settings.DAILY_PRACTICE_REWARD_LIMIT
    granted, count = cache.claim_practice_reward(r, student_id, now, limit)
    if granted:
        _on_rollback(db, lambda: cache.release_practice_reward(r, student_id, now))
    else:
        logger.info(f"User {student_id} reached the daily practice reward limit")
    return {"granted": granted, "rewarded_today": count, "limit": limit, "limit_reached": count >= limit}


def submit_answer(db: Session, r: redis.Redis, notifier: EventNotifier, student_id: str, question_id: int,
                  answer: Any, time_spent: int = 0, stage_id: Optional[int] = None) -> dict:
    """Evaluate and settle one answer.

    With ``stage_id`` the answer counts toward the open session of that stage
    and is rejected unless the question belongs to the stage and has not been
    resolved in the session yet. Without it the answer is quick practice, whose
    rewards are capped per day.
    """
    if answer is None or answer == "" or answer == []:
        raise ValidationError("Answer is required")
    question = db.get(Question, question_id)
    if question is None or not question.is_active:
        raise NotFoundError("Question not found", ErrorCodes.QUESTION_NOT_FOUND)
    stage = sessions.get_active_stage(db, stage_id) if stage_id is not None else None
    progress = sessions.claim_session_question(db, student_id, stage, question) if stage is not None else None

    now = utcnow()
    result = evaluate(question, answer)
    effects = active_effects(db, student_id, now)

    daily_practice = None
    limited = False
    if stage is None:
        if result.is_correct:
            daily_practice = _claim_practice_reward(db, r, student_id, now)
            limited = not daily_practice.pop("granted")
        else:
            used = cache.rewarded_practice_count(r, student_id, now)
            limit = settings.DAILY_PRACTICE_REWARD_LIMIT
            daily_practice = {"rewarded_today": used, "limit": limit, "limit_reached": used >= limit}

    reward = NO_REWARD if limited else compute_reward(question, result.is_correct, effects)

    user = get_user(db, student_id, lock=True)
    settled = settle_answer(user, result.is_correct, reward, shield_active=EffectType.SHIELD.value in effects,
                            subject=None if limited else question.subject)

    attempt = QuestionAttempt(
        student_id=student_id, question_id=question.id, stage_id=stage.id if stage else None,
        session_id=progress.session_id if progress else None, submitted_answer=answer,
        is_correct=result.is_correct, time_spent_seconds=time_spent,
        exp_gained=reward.exp, gold_gained=reward.gold, created_at=now,
    )
    session_progress = None
    if progress is not None:
        sessions.log_session_attempt(db, attempt)
        progress = sessions.advance_session(db, progress, stage, result.is_correct)
        session_progress = {
            "session_correct": progress.session_correct,
            "session_total": progress.session_total,
            "questions_per_session": stage.questions_per_session,
        }
    else:
        db.add(attempt)
    _update_question_stats(db, question.id, result.is_correct, time_spent)
    db.flush()

    unlocked = notifier.answer_submitted(student_id, question.id, result.is_correct, settled["levels_gained"])
    return {
        "is_correct": result.is_correct,
        "correct_answer": result.correct_answer,
        "explanation": result.explanation,
        "rewards": reward.as_dict(),
        "levels_gained": settled["levels_gained"],
        "shield_used": settled["shield_used"],
        "profile": {"level": user.level, "exp": user.exp, "exp_to_next_level": user.exp_to_next_level,
                    "gold": user.gold, "current_streak": user.current_streak},
        "session": session_progress,
        "daily_practice": daily_practice,
        **unlocked,
    }


def history(db: Session, student_id: str, page: int = 1, page_size: int = 20) -> dict:
    base = select(QuestionAttempt).where(QuestionAttempt.student_id == student_id)
    total = db.scalar(select(func.count()).select_from(base.subquery())) or 0
    rows = db.scalars(
        base.order_by(QuestionAttempt.created_at.desc(), QuestionAttempt.id.desc())
        .offset((page - 1) * page_size).limit(page_size)
    )
    items: List[dict] = [
        {
            "id": a.id, "question_id": a.question_id, "stage_id": a.stage_id, "is_correct": a.is_correct,
            "skipped": a.skipped, "time_spent_seconds": a.time_spent_seconds, "exp_gained": a.exp_gained,
            "gold_gained": a.gold_gained, "created_at": a.created_at,
        }
        for a in rows
    ]
    return {"items": items, "total": total, "page": page, "page_size": page_size}


def stats(db: Session, user: User) -> dict:
    row = db.execute(
        select(
            func.count(QuestionAttempt.id),
            func.coalesce(func.sum(case((QuestionAttempt.is_correct.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(QuestionAttempt.exp_gained), 0),
            func.coalesce(func.sum(QuestionAttempt.gold_gained), 0),
            func.coalesce(func.avg(QuestionAttempt.time_spent_seconds), 0),
        ).where(QuestionAttempt.student_id == user.id, QuestionAttempt.skipped.is_(False))
    ).one()
    attempts, correct, exp, gold, avg_time = row
    return {
        "total_attempts": attempts,
        "total_correct": correct,
        "correct_rate": round(correct / attempts * 100) if attempts else 0,
        "exp_earned": exp,
        "gold_earned": gold,
        "avg_time_seconds": round(float(avg_time), 1),
        "level": user.level,
        "current_streak": user.current_streak,
        "best_streak": user.best_streak,
        "subject_stats": dict(user.subject_stats or {}),
    }
