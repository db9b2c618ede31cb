from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eduquest.api.deps import current_student
from eduquest.core.database import get_db
from eduquest.models.orm import User
from eduquest.services import shop

router = APIRouter()


class Purchase(BaseModel):
    quantity: int = Field(default=1, ge=1, le=999)


class PurchaseOut(BaseModel):
    item_id: int
    quantity: int
    gold_spent: int
    gold_remaining: int


@router.post("/buy/{item_id}", response_model=PurchaseOut)
def buy(item_id: int, payload: Purchase, user: User = Depends(current_student), db: Session = Depends(get_db)):
    return shop.buy_item(db, user, item_id, payload.quantity)
