import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from eduquest.core.auth import create_token
from eduquest.core.cache import get_redis
from eduquest.core.database import get_db, init_db
from eduquest.main import app
from eduquest.models.orm import Item, PlayerItem, Question, Stage, User
from eduquest.services.notifications import EventNotifier


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def notifier(fake_redis):
    return EventNotifier(fake_redis)


@pytest.fixture
def client(session_factory, fake_redis):
    def override_db():
        s = session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(user_id: str, roles=("student",)) -> dict:
        return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}
    return headers


class Factory:
    """Seeds rows with sensible defaults; every method flushes so ids are assigned."""

    def __init__(self, db):
        self.db = db

    def user(self, user_id="s1", **kw) -> User:
        kw.setdefault("display_name", user_id)
        kw.setdefault("role", "student")
        u = User(id=user_id, **kw)
        self.db.add(u)
        self.db.flush()
        return u

    def question(self, **kw) -> Question:
        kw.setdefault("difficulty", "easy")
        kw.setdefault("type", "single_choice")
        kw.setdefault("content_text", "2 + 2 = ?")
        kw.setdefault("options", [{"id": "A", "text": "3"}, {"id": "B", "text": "4"},
                                  {"id": "C", "text": "5"}, {"id": "D", "text": "22"}])
        kw.setdefault("answer_correct", "B")
        kw.setdefault("unit_id", 1)
        q = Question(**kw)
        self.db.add(q)
        self.db.flush()
        return q

    def stage(self, **kw) -> Stage:
        kw.setdefault("name", "Forest")
        kw.setdefault("unit_ids", [1])
        kw.setdefault("questions_per_session", 5)
        kw.setdefault("bonus_exp", 20)
        kw.setdefault("bonus_gold", 10)
        s = Stage(**kw)
        self.db.add(s)
        self.db.flush()
        return s

    def item(self, **kw) -> Item:
        kw.setdefault("name", "EXP Potion")
        kw.setdefault("type", "consumable")
        kw.setdefault("price", 50)
        kw.setdefault("effects", [{"type": "exp_boost", "value": 2, "duration": 30}])
        i = Item(**kw)
        self.db.add(i)
        self.db.flush()
        return i

    def give(self, user: User, item: Item, quantity: int = 1) -> PlayerItem:
        owned = PlayerItem(player_id=user.id, item_id=item.id, quantity=quantity)
        self.db.add(owned)
        self.db.flush()
        return owned


@pytest.fixture
def make(db):
    return Factory(db)
