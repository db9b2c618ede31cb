from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

import redis
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eduquest.api.deps import current_student, get_notifier
from eduquest.api.stages import QuestionOut, SessionCounters
from eduquest.core.cache import get_redis
from eduquest.core.database import get_db
from eduquest.models.orm import User
from eduquest.services import attempts
from eduquest.services.notifications import EventNotifier
from eduquest.services.selector import QuestionFilter

router = APIRouter()


class AnswerSubmit(BaseModel):
    answer: Union[bool, str, List[str]]
    time_spent_seconds: int = Field(default=0, ge=0)
    stage_id: Optional[int] = None


class DailyPractice(BaseModel):
    rewarded_today: int
    limit: int
    limit_reached: bool


class AnswerResult(BaseModel):
    is_correct: bool
    correct_answer: Any
    explanation: Optional[str] = None
    rewards: Dict[str, int]
    levels_gained: int
    shield_used: bool
    profile: Dict[str, int]
    session: Optional[SessionCounters] = None
    daily_practice: Optional[DailyPractice] = None
    unlocked_achievements: List[Any] = []
    completed_tasks: List[Any] = []


class AttemptOut(BaseModel):
    id: int
    question_id: int
    stage_id: Optional[int] = None
    is_correct: bool
    skipped: bool = False
    time_spent_seconds: int
    exp_gained: int
    gold_gained: int
    created_at: datetime


class HistoryPage(BaseModel):
    items: List[AttemptOut]
    total: int
    page: int
    page_size: int


class StatsOut(BaseModel):
    total_attempts: int
    total_correct: int
    correct_rate: int
    exp_earned: int
    gold_earned: int
    avg_time_seconds: float
    level: int
    current_streak: int
    best_streak: int
    subject_stats: Dict[str, int] = {}


@router.get("/question/random", response_model=QuestionOut)
def random_question(
    subject_id: Optional[int] = None,
    unit_ids: List[int] = Query(default=[]),
    subject: Optional[str] = None,
    category_id: Optional[int] = None,
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None,
    exclude_ids: List[int] = Query(default=[]),
    user: User = Depends(current_student),
    db: Session = Depends(get_db),
):
    flt = QuestionFilter(subject_id=subject_id, unit_ids=unit_ids, subject=subject,
                         category_id=category_id, difficulty=difficulty)
    return attempts.random_question(db, flt, exclude_ids)


@router.get("/history", response_model=HistoryPage)
def attempt_history(page: int = Query(default=1, ge=1), page_size: int = Query(default=20, ge=1, le=100),
                    user: User = Depends(current_student), db: Session = Depends(get_db)):
    return attempts.history(db, user.id, page, page_size)


@router.get("/stats", response_model=StatsOut)
def attempt_stats(user: User = Depends(current_student), db: Session = Depends(get_db)):
    return attempts.stats(db, user)


@router.post("/{question_id}", response_model=AnswerResult)
def submit_answer(question_id: int, payload: AnswerSubmit, user: User = Depends(current_student),
                  db: Session = Depends(get_db), r: redis.Redis = Depends(get_redis),
                  notifier: EventNotifier = Depends(get_notifier)):
    return attempts.submit_answer(db, r, notifier, user.id, question_id, payload.answer,
                                  payload.time_spent_seconds, payload.stage_id)
