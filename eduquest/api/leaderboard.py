from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from eduquest.api.deps import current_student
from eduquest.core.database import get_db
from eduquest.models.orm import User
from eduquest.services import leaderboard

router = APIRouter()

Number = Union[int, float]


class TitleOut(BaseModel):
    id: int
    name: str
    icon: Optional[str] = None
    rarity: str


class Entry(BaseModel):
    rank: Optional[int] = None
    student_id: str
    display_name: str
    avatar_url: Optional[str] = None
    level: int
    value: Optional[Number] = None
    title: Optional[TitleOut] = None
    exp: Optional[int] = None
    gold: Optional[int] = None
    attempts: Optional[int] = None
    correct: Optional[int] = None
    correct_rate: Optional[float] = None


class LeaderboardOut(BaseModel):
    type: str
    period: str
    class_id: Optional[int] = None
    leaderboard: List[Entry]
    current_user: Entry


class RankOut(BaseModel):
    rank: int
    value: Number


class MyRanks(BaseModel):
    total_students: int
    exp: RankOut
    level: RankOut
    gold: RankOut
    correct_rate: RankOut


@router.get("", response_model=LeaderboardOut)
def get_leaderboard(
    lb_type: str = Query(default="exp", alias="type"),
    period: str = "all",
    class_id: Optional[int] = None,
    limit: Optional[int] = None,
    user: User = Depends(current_student),
    db: Session = Depends(get_db),
):
    return leaderboard.get_leaderboard(db, user, lb_type, period, class_id, limit)


@router.get("/my-rank", response_model=MyRanks)
def my_rank(user: User = Depends(current_student), db: Session = Depends(get_db)):
    return leaderboard.my_ranks(db, user)
