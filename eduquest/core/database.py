from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from eduquest.core.config import settings

engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """One transaction per request: commit on success, roll back on any error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create tables if they don't exist. In production, use migrations instead."""
    from eduquest.models.orm import Base
    Base.metadata.create_all(bind=bind or engine)
