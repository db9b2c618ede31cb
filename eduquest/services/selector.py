import random
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from eduquest.core.errors import ErrorCodes, NotFoundError
from eduquest.models.orm import CHOICE_TYPES, Question, Stage


@dataclass
class QuestionFilter:
    """One of three shapes: stage, subject/unit hierarchy, or legacy subject/category."""
    stage_id: Optional[int] = None
    subject_id: Optional[int] = None
    unit_ids: List[int] = field(default_factory=list)
    subject: Optional[str] = None
    category_id: Optional[int] = None
    difficulty: Optional[str] = None


def is_servable(question: Question) -> bool:
    if question.type in CHOICE_TYPES:
        return len(question.options or []) >= 2
    return True


def _stage_pool(db: Session, stage: Stage) -> List[Question]:
    stmt = select(Question).where(Question.is_active.is_(True), Question.unit_id.in_(stage.unit_ids or []))
    if stage.difficulty:
        stmt = stmt.where(Question.difficulty.in_(stage.difficulty))
    return list(db.scalars(stmt))


def in_stage_pool(stage: Stage, question: Question) -> bool:
    """The stage pool rules applied to a single question."""
    if not question.is_active or question.unit_id not in (stage.unit_ids or []):
        return False
    if stage.difficulty and question.difficulty not in stage.difficulty:
        return False
    return is_servable(question)


def _filter_pool(db: Session, flt: QuestionFilter) -> List[Question]:
    stmt = select(Question).where(Question.is_active.is_(True))
    if flt.unit_ids:
        stmt = stmt.where(Question.unit_id.in_(flt.unit_ids))
    elif flt.subject_id is not None:
        stmt = stmt.where(Question.subject_id == flt.subject_id)
    else:
        # legacy tagging only applies when the hierarchy is not used
        if flt.subject:
            stmt = stmt.where(Question.subject == flt.subject)
        if flt.category_id is not None:
            stmt = stmt.where(Question.category_id == flt.category_id)
    if flt.difficulty:
        stmt = stmt.where(Question.difficulty == flt.difficulty)
    return list(db.scalars(stmt))


def candidate_pool(db: Session, flt: QuestionFilter, stage: Optional[Stage] = None) -> List[Question]:
    pool = _stage_pool(db, stage) if stage is not None else _filter_pool(db, flt)
    return [q for q in pool if is_servable(q)]


def pick(pool: List[Question], exclude_ids: Iterable[int] = (), rng: random.Random = None,
         allow_repeats: bool = True) -> Question:
    """Random pick, preferring questions not in ``exclude_ids`` while any remain.

    With ``allow_repeats=False`` the excluded questions are never returned.
    """
    excluded = set(exclude_ids)
    fresh = [q for q in pool if q.id not in excluded]
    choices = fresh if fresh or not allow_repeats else pool
    if not choices:
        raise NotFoundError("No question available", ErrorCodes.QUESTION_NOT_FOUND)
    return (rng or random).choice(choices)


def select_question(db: Session, flt: QuestionFilter, exclude_ids: Iterable[int] = (),
                    allow_repeats: bool = True) -> Question:
    stage = None
    if flt.stage_id is not None:
        stage = db.get(Stage, flt.stage_id)
        if stage is None or not stage.is_active:
            raise NotFoundError("Stage not found", ErrorCodes.STAGE_NOT_FOUND)
    return pick(candidate_pool(db, flt, stage), exclude_ids, allow_repeats=allow_repeats)
