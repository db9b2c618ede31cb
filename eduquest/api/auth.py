from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eduquest.core.auth import create_token
from eduquest.core.config import settings
from eduquest.core.database import get_db
from eduquest.core.errors import NotFoundError
from eduquest.models.orm import User

router = APIRouter()


class MockLogin(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    roles: List[str] = ["student"]
    display_name: Optional[str] = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    roles: List[str]


@router.post("/mock-login", response_model=TokenOut)
def mock_login(payload: MockLogin, db: Session = Depends(get_db)):
    """Development login; also provisions the player profile on first use."""
    if not settings.ENABLE_MOCK_LOGIN:
        raise NotFoundError("Not found")
    if db.get(User, payload.user_id) is None:
        role = "student" if "student" in payload.roles else (payload.roles[0] if payload.roles else "student")
        db.add(User(id=payload.user_id, display_name=payload.display_name or payload.user_id, role=role))
    token = create_token(payload.user_id, payload.roles)
    return TokenOut(access_token=token, roles=payload.roles)
