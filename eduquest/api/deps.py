import redis
from fastapi import Depends
from sqlalchemy.orm import Session

from eduquest.core.auth import TokenData, student_user
from eduquest.core.cache import get_redis
from eduquest.core.database import get_db
from eduquest.models.orm import User
from eduquest.services.attempts import get_user
from eduquest.services.notifications import EventNotifier


def current_student(token: TokenData = Depends(student_user), db: Session = Depends(get_db)) -> User:
    return get_user(db, token.sub)


def get_notifier(r: redis.Redis = Depends(get_redis)) -> EventNotifier:
    return EventNotifier(r)
