"""
Stage session lifecycle.

Each (player, stage) progress row moves through
``not_started -> in_session -> completed``; replay returns it to
``in_session``. Counters are only ever changed with single UPDATE statements
guarded on the session state, so concurrent answers cannot lose increments
and a retried completion cannot settle a session twice.
"""
import logging
from typing import Dict, List, Optional, Set
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eduquest.core.config import settings
from eduquest.core.database import utcnow
from eduquest.core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from eduquest.models.orm import Question, QuestionAttempt, SessionState, Stage, StageProgress, UnlockType, User
from eduquest.services.rewards import Reward, grant, round_half_up
from eduquest.services.selector import in_stage_pool

logger = logging.getLogger(__name__)


def get_active_stage(db: Session, stage_id: int) -> Stage:
    stage = db.get(Stage, stage_id)
    if stage is None or not stage.is_active:
        raise NotFoundError("Stage not found", ErrorCodes.STAGE_NOT_FOUND)
    return stage


def get_progress(db: Session, player_id: str, stage_id: int, lock: bool = False) -> Optional[StageProgress]:
    stmt = select(StageProgress).where(StageProgress.player_id == player_id, StageProgress.stage_id == stage_id)
    if lock:
        stmt = stmt.with_for_update()
    return db.scalars(stmt.execution_options(populate_existing=True)).first()


def create_progress(db: Session, player_id: str, stage_id: int) -> StageProgress:
    progress = StageProgress(player_id=player_id, stage_id=stage_id, is_unlocked=True)
    db.add(progress)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("Stage progress was created concurrently, please retry")
    return progress


def progress_snapshot(progress: Optional[StageProgress]) -> dict:
    if progress is None:
        return {"session_state": SessionState.NOT_STARTED.value, "session_correct": 0, "session_total": 0,
                "best_score": 0, "is_completed": False, "total_attempts": 0}
    return {
        "session_state": progress.session_state,
        "session_correct": progress.session_correct,
        "session_total": progress.session_total,
        "best_score": progress.best_score,
        "is_completed": progress.is_completed,
        "total_attempts": progress.total_attempts,
    }


# ---------- unlock rules ----------

def _is_unlocked(stage: Stage, index: int, stages: List[Stage], progress: Dict[int, StageProgress], level: int) -> bool:
    own = progress.get(stage.id)
    if own is not None and own.is_unlocked:
        return True
    kind = stage.unlock_type
    if kind == UnlockType.NONE.value:
        return True
    if kind == UnlockType.PREVIOUS.value:
        if index == 0:
            return True
        prev = progress.get(stages[index - 1].id)
        return bool(prev and prev.is_completed)
    if kind == UnlockType.LEVEL.value:
        return level >= int(stage.unlock_value or 1)
    if kind == UnlockType.STAGE.value:
        try:
            required = progress.get(int(stage.unlock_value))
        except (TypeError, ValueError):
            return False
        return bool(required and required.is_completed)
    return index == 0


def _ordered_stages(db: Session) -> List[Stage]:
    return list(db.scalars(select(Stage).where(Stage.is_active.is_(True)).order_by(Stage.order, Stage.id)))


def _progress_map(db: Session, player_id: str) -> Dict[int, StageProgress]:
    rows = db.scalars(select(StageProgress).where(StageProgress.player_id == player_id))
    return {p.stage_id: p for p in rows}


def list_stages_for_student(db: Session, user: User) -> List[dict]:
    stages = _ordered_stages(db)
    progress = _progress_map(db, user.id)
    out = []
    for i, stage in enumerate(stages):
        p = progress.get(stage.id)
        out.append({
            "id": stage.id,
            "name": stage.name,
            "description": stage.description,
            "icon": stage.icon,
            "order": stage.order,
            "questions_per_session": stage.questions_per_session,
            "rewards": stage_rewards(stage),
            "is_unlocked": _is_unlocked(stage, i, stages, progress, user.level),
            "is_completed": bool(p and p.is_completed),
            "completed_at": p.completed_at if p else None,
            "best_score": p.best_score if p else 0,
            "total_attempts": p.total_attempts if p else 0,
        })
    return out


def ensure_unlocked(db: Session, user: User, stage: Stage) -> None:
    stages = _ordered_stages(db)
    index = next(i for i, s in enumerate(stages) if s.id == stage.id)
    if not _is_unlocked(stage, index, stages, _progress_map(db, user.id), user.level):
        raise ValidationError("Stage is locked", ErrorCodes.STAGE_LOCKED)


def stage_rewards(stage: Stage) -> dict:
    return {
        "bonus_exp": stage.bonus_exp,
        "bonus_gold": stage.bonus_gold,
        "first_clear_bonus": {"exp": stage.first_clear_exp, "gold": stage.first_clear_gold},
    }


# ---------- lifecycle ----------

def start_session(db: Session, user: User, stage_id: int) -> dict:
    """Begin (or replay) a stage; only the session counters are reset."""
    stage = get_active_stage(db, stage_id)
    ensure_unlocked(db, user, stage)
    progress = get_progress(db, user.id, stage.id) or create_progress(db, user.id, stage.id)
    session_id = str(uuid4())
    db.execute(
        update(StageProgress)
        .where(StageProgress.id == progress.id)
        .values(session_id=session_id, session_state=SessionState.IN_SESSION.value,
                session_correct=0, session_total=0, session_started_at=utcnow(), is_unlocked=True)
        .execution_options(synchronize_session=False)
    )
    progress = get_progress(db, user.id, stage.id)
    logger.info(f"User {user.id} started stage {stage.id} session {session_id}")
    return {
        "stage_id": stage.id,
        "stage_name": stage.name,
        "questions_per_session": stage.questions_per_session,
        "session_id": session_id,
        "progress": progress_snapshot(progress),
    }


def record_session_answer(db: Session, player_id: str, stage: Stage, is_correct: bool,
                          session_id: Optional[str] = None) -> Optional[StageProgress]:
    """Count one resolved question toward the open session.

    Returns the refreshed progress row, or None when there is no open session
    (or it is not ``session_id``) or the session already holds
    ``questions_per_session`` answers.
    """
    guards = [
        StageProgress.player_id == player_id,
        StageProgress.stage_id == stage.id,
        StageProgress.session_state == SessionState.IN_SESSION.value,
        StageProgress.session_total < stage.questions_per_session,
    ]
    if session_id is not None:
        guards.append(StageProgress.session_id == session_id)
    result = db.execute(
        update(StageProgress)
        .where(*guards)
        .values(
            session_total=StageProgress.session_total + 1,
            session_correct=StageProgress.session_correct + (1 if is_correct else 0),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return get_progress(db, player_id, stage.id)


def answered_in_session(db: Session, progress: Optional[StageProgress]) -> Set[int]:
    if progress is None or progress.session_state != SessionState.IN_SESSION.value or not progress.session_id:
        return set()
    stmt = select(QuestionAttempt.question_id).where(
        QuestionAttempt.student_id == progress.player_id,
        QuestionAttempt.session_id == progress.session_id,
    )
    return set(db.scalars(stmt))


def claim_session_question(db: Session, player_id: str, stage: Stage, question: Question) -> StageProgress:
    """Check that ``question`` may be resolved in the player's open session of ``stage``.

    The session must be open and not yet full, the question must belong to
    the stage pool, and it must not have been answered or skipped in this
    session already. Nothing is written; returns the open progress row.
    """
    progress = get_progress(db, player_id, stage.id)
    if progress is None or progress.session_state != SessionState.IN_SESSION.value:
        raise ConflictError("No stage session in progress", ErrorCodes.SESSION_NOT_IN_PROGRESS)
    if progress.session_total >= stage.questions_per_session:
        raise ConflictError("Stage session already holds all its answers", ErrorCodes.SESSION_NOT_IN_PROGRESS)
    if not in_stage_pool(stage, question):
        raise ValidationError(f"Question {question.id} is not part of stage {stage.id}", ErrorCodes.QUESTION_NOT_IN_STAGE)
    if question.id in answered_in_session(db, progress):
        raise ConflictError("Question already resolved in this session", ErrorCodes.QUESTION_ALREADY_RESOLVED)
    return progress


def log_session_attempt(db: Session, attempt: QuestionAttempt) -> None:
    """Insert an attempt that carries a session id; the unique (session, question) key rejects a racing duplicate."""
    db.add(attempt)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("Question already resolved in this session", ErrorCodes.QUESTION_ALREADY_RESOLVED)


def advance_session(db: Session, progress: StageProgress, stage: Stage, is_correct: bool) -> StageProgress:
    updated = record_session_answer(db, progress.player_id, stage, is_correct, session_id=progress.session_id)
    if updated is None:
        raise ConflictError("Stage session changed, please retry", ErrorCodes.SESSION_NOT_IN_PROGRESS)
    return updated


def complete_session(db: Session, user: User, stage_id: int,
                     client_correct: Optional[int] = None, client_total: Optional[int] = None) -> dict:
    """Settle the open session exactly once.

    Scores come from the server-side counters; client-reported counts are
    only compared and logged.
    """
    stage = db.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError("Stage not found", ErrorCodes.STAGE_NOT_FOUND)
    progress = get_progress(db, user.id, stage.id, lock=True)
    if progress is None or progress.session_state != SessionState.IN_SESSION.value:
        raise ConflictError("No stage session in progress", ErrorCodes.SESSION_NOT_IN_PROGRESS)
    if progress.session_total < stage.questions_per_session:
        raise ConflictError(
            f"Session has {progress.session_total} of {stage.questions_per_session} answers",
            ErrorCodes.SESSION_NOT_IN_PROGRESS,
        )

    correct, total = progress.session_correct, progress.session_total
    if (client_correct is not None and client_correct != correct) or (client_total is not None and client_total != total):
        logger.warning(f"User {user.id} stage {stage.id}: client reported {client_correct}/{client_total}, server has {correct}/{total}")

    # compare-and-swap on the session id: a concurrent or retried completion finds nothing to update
    claimed = db.execute(
        update(StageProgress)
        .where(StageProgress.id == progress.id,
               StageProgress.session_id == progress.session_id,
               StageProgress.session_state == SessionState.IN_SESSION.value)
        .values(session_state=SessionState.COMPLETED.value)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        raise ConflictError("No stage session in progress", ErrorCodes.SESSION_NOT_IN_PROGRESS)
    progress = get_progress(db, user.id, stage.id)

    rate = correct / total * 100
    correct_rate = round_half_up(rate)
    is_passed = rate >= settings.STAGE_PASS_RATE
    is_first_clear = is_passed and not progress.is_completed

    progress.best_score = max(progress.best_score, correct_rate)
    progress.total_attempts += 1
    progress.total_questions_answered += total
    progress.total_correct += correct
    if is_first_clear:
        progress.is_completed = True
        progress.completed_at = utcnow()

    bonus = Reward()
    if is_passed:
        bonus = Reward(exp=stage.bonus_exp, gold=stage.bonus_gold)
        if is_first_clear:
            bonus = Reward(exp=bonus.exp + stage.first_clear_exp, gold=bonus.gold + stage.first_clear_gold)
    levels = 0
    if bonus.exp or bonus.gold:
        player = db.scalars(select(User).where(User.id == user.id).with_for_update().execution_options(populate_existing=True)).one()
        levels = grant(player, bonus)
    db.flush()

    logger.info(f"User {user.id} completed stage {stage.id}: {correct}/{total} passed={is_passed} first_clear={is_first_clear}")
    return {
        "is_passed": is_passed,
        "is_first_clear": is_first_clear,
        "correct_count": correct,
        "total_count": total,
        "correct_rate": correct_rate,
        "rewards": {"bonus_exp": bonus.exp, "bonus_gold": bonus.gold},
        "levels_gained": levels,
        "progress": {
            "is_completed": progress.is_completed,
            "completed_at": progress.completed_at,
            "best_score": progress.best_score,
            "total_attempts": progress.total_attempts,
        },
    }
