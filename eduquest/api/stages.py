from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eduquest.api.deps import current_student, get_notifier
from eduquest.core.database import get_db
from eduquest.models.orm import User
from eduquest.services import attempts, sessions
from eduquest.services.notifications import EventNotifier

router = APIRouter()


class QuestionOut(BaseModel):
    id: int
    type: str
    difficulty: str
    content_text: str
    content_media: List[dict] = []
    options: List[dict] = []
    subject_id: Optional[int] = None
    unit_id: Optional[int] = None


class SessionCounters(BaseModel):
    session_correct: int
    session_total: int
    questions_per_session: int


class StageQuestion(BaseModel):
    question: QuestionOut
    progress: SessionCounters


class ProgressSnapshot(BaseModel):
    session_state: str
    session_correct: int
    session_total: int
    best_score: int
    is_completed: bool
    total_attempts: int


class StageRewards(BaseModel):
    bonus_exp: int
    bonus_gold: int
    first_clear_bonus: Dict[str, int]


class StageOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = ""
    icon: Optional[str] = None
    order: int
    questions_per_session: int
    rewards: StageRewards
    is_unlocked: bool
    is_completed: bool
    completed_at: Optional[datetime] = None
    best_score: int
    total_attempts: int


class SessionStarted(BaseModel):
    stage_id: int
    stage_name: str
    questions_per_session: int
    session_id: str
    progress: ProgressSnapshot


class SessionComplete(BaseModel):
    # informational only; the server's own counters decide the result
    correct_count: Optional[int] = Field(default=None, ge=0)
    total_count: Optional[int] = Field(default=None, ge=0)


class CompletionProgress(BaseModel):
    is_completed: bool
    completed_at: Optional[datetime] = None
    best_score: int
    total_attempts: int


class SessionCompleted(BaseModel):
    is_passed: bool
    is_first_clear: bool
    correct_count: int
    total_count: int
    correct_rate: int
    rewards: Dict[str, int]
    levels_gained: int
    progress: CompletionProgress


@router.get("", response_model=List[StageOut])
def list_stages(user: User = Depends(current_student), db: Session = Depends(get_db)):
    return sessions.list_stages_for_student(db, user)


@router.get("/{stage_id}/question", response_model=StageQuestion)
def stage_question(stage_id: int, user: User = Depends(current_student), db: Session = Depends(get_db)):
    return attempts.next_stage_question(db, user, stage_id)


@router.post("/{stage_id}/start", response_model=SessionStarted)
def start_stage(stage_id: int, user: User = Depends(current_student), db: Session = Depends(get_db)):
    return sessions.start_session(db, user, stage_id)


@router.post("/{stage_id}/complete", response_model=SessionCompleted)
def complete_stage(stage_id: int, payload: Optional[SessionComplete] = None,
                   user: User = Depends(current_student), db: Session = Depends(get_db),
                   notifier: EventNotifier = Depends(get_notifier)):
    payload = payload or SessionComplete()
    result = sessions.complete_session(db, user, stage_id, payload.correct_count, payload.total_count)
    notifier.stage_completed(user.id, stage_id, result["is_passed"], result["is_first_clear"])
    return result
