from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from eduquest.api.deps import current_student
from eduquest.api.stages import ProgressSnapshot
from eduquest.core.database import get_db
from eduquest.models.orm import User
from eduquest.services import items

router = APIRouter()


class EffectOut(BaseModel):
    type: str
    value: float
    item_id: int
    expires_at: datetime
    remaining_minutes: int


class OwnedItem(BaseModel):
    item_id: int
    name: str
    description: Optional[str] = ""
    type: str
    rarity: str
    slot: Optional[str] = None
    icon: Optional[str] = None
    effects: List[dict] = []
    quantity: int
    acquired_at: Optional[datetime] = None


class InventoryOut(BaseModel):
    items: List[OwnedItem]
    active_effects: List[EffectOut]
    equipped: Dict[str, int]


class QuizItemOut(BaseModel):
    item_id: int
    name: str
    icon: Optional[str] = None
    effects: List[str]
    quantity: int


class UseResult(BaseModel):
    item_id: int
    applied_effects: List[EffectOut]
    remaining_quantity: int


class QuizUseResult(BaseModel):
    item_id: int
    question_id: int
    remaining_quantity: int
    hint: Optional[str] = None
    eliminated_option: Optional[Any] = None
    skip: bool = False
    correct_answer: Optional[str] = None
    session_advanced: Optional[bool] = None
    progress: Optional[ProgressSnapshot] = None


class EquippedOut(BaseModel):
    equipped: Dict[str, int]


@router.get("", response_model=InventoryOut)
def get_inventory(user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.inventory(db, user)


@router.get("/effects", response_model=List[EffectOut])
def get_effects(user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.current_effects(db, user.id)


@router.get("/quiz-items", response_model=List[QuizItemOut])
def get_quiz_items(user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.quiz_items(db, user.id)


@router.post("/use/{item_id}", response_model=UseResult)
def use_item(item_id: int, user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.use_consumable(db, user, item_id)


@router.post("/quiz-use/{item_id}/{question_id}", response_model=QuizUseResult)
def use_quiz_item(item_id: int, question_id: int, stage_id: Optional[int] = None,
                  user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.use_quiz_item(db, user, item_id, question_id, stage_id)


@router.post("/equip/{item_id}", response_model=EquippedOut)
def equip_item(item_id: int, user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.equip(db, user, item_id)


@router.post("/unequip/{slot}", response_model=EquippedOut)
def unequip_slot(slot: str, user: User = Depends(current_student), db: Session = Depends(get_db)):
    return items.unequip(db, user, slot)
