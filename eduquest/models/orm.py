import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, Float, ForeignKey, Index,
    Integer, String, Table, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from eduquest.core.config import settings
from eduquest.core.database import utcnow

# BIGINT ids do not autoincrement on SQLite
BigId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Difficulty(str, enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class QuestionType(str, enum.Enum):
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    FILL_BLANK = "fill_blank"
    TRUE_FALSE = "true_false"


CHOICE_TYPES = (QuestionType.SINGLE_CHOICE.value, QuestionType.MULTIPLE_CHOICE.value, QuestionType.TRUE_FALSE.value)


class UnlockType(str, enum.Enum):
    NONE = "none"
    PREVIOUS = "previous"
    LEVEL = "level"
    STAGE = "stage"


class SessionState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_SESSION = "in_session"
    COMPLETED = "completed"


class ItemType(str, enum.Enum):
    CONSUMABLE = "consumable"
    EQUIPMENT = "equipment"
    COSMETIC = "cosmetic"


class EffectType(str, enum.Enum):
    EXP_BOOST = "exp_boost"
    GOLD_BOOST = "gold_boost"
    SHIELD = "shield"
    TIME_EXTEND = "time_extend"
    HINT = "hint"
    SKIP = "skip"


DURATION_EFFECTS = (EffectType.EXP_BOOST.value, EffectType.GOLD_BOOST.value, EffectType.SHIELD.value, EffectType.TIME_EXTEND.value)
QUIZ_EFFECTS = (EffectType.HINT.value, EffectType.SKIP.value)
EQUIPMENT_SLOTS = ("title", "head", "body", "accessory", "background", "effect")


# ========== People ==========

class User(Base):
    """A player or teacher. Student profile fields live on the row itself."""

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_role", "role"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(50), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    role: Mapped[str] = mapped_column(String(20), default="student", nullable=False)

    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    exp: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    exp_to_next_level: Mapped[int] = mapped_column(Integer, default=settings.BASE_EXP_TO_NEXT_LEVEL, nullable=False)
    gold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_questions_answered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_correct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    correct_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    best_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    equipped_items: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    # subject -> mastery score, 0..100
    subject_stats: Mapped[Dict[str, int]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class_students = Table(
    "class_students",
    Base.metadata,
    Column("class_id", BigId, ForeignKey("classes.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Classroom(Base):
    __tablename__ = "classes"

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    teacher_id: Mapped[Optional[str]] = mapped_column(String(64))


# ========== Content ==========

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_q_unit_difficulty", "unit_id", "difficulty", "is_active"),
        Index("idx_q_subject_difficulty", "subject_id", "difficulty", "is_active"),
        Index("idx_q_legacy_subject", "subject", "difficulty", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    # hierarchical tagging
    subject_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    unit_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    # legacy flat tagging
    subject: Mapped[Optional[str]] = mapped_column(String(20))
    category_id: Mapped[Optional[int]] = mapped_column(BigInteger)

    difficulty: Mapped[str] = mapped_column(String(10), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    content_text: Mapped[str] = mapped_column(Text, nullable=False)
    content_media: Mapped[List[Dict]] = mapped_column(JSON, default=list)
    options: Mapped[List[Dict]] = mapped_column(JSON, default=list)
    answer_correct: Mapped[Any] = mapped_column(JSON, nullable=False)
    answer_explanation: Mapped[Optional[str]] = mapped_column(Text)
    base_exp: Mapped[Optional[int]] = mapped_column(Integer)
    base_gold: Mapped[Optional[int]] = mapped_column(Integer)

    total_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    correct_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_time_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Stage(Base):
    __tablename__ = "stages"
    __table_args__ = (
        Index("idx_stages_order", "order"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="")
    icon: Mapped[str] = mapped_column(String(50), default="🏰")
    unit_ids: Mapped[List[int]] = mapped_column(JSON, default=list)
    difficulty: Mapped[List[str]] = mapped_column(JSON, default=list)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    questions_per_session: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    unlock_type: Mapped[str] = mapped_column(String(20), default=UnlockType.NONE.value, nullable=False)
    unlock_value: Mapped[Optional[str]] = mapped_column(String(64))
    bonus_exp: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bonus_gold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_clear_exp: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    first_clear_gold: Mapped[int] = mapped_column(Integer, default=25, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Item(Base):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(200), default="")
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    rarity: Mapped[str] = mapped_column(String(20), default="common", nullable=False)
    slot: Mapped[Optional[str]] = mapped_column(String(20))
    icon: Mapped[str] = mapped_column(String(200), default="")
    price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # [{"type": "exp_boost", "value": 2, "duration": 30}]
    effects: Mapped[List[Dict]] = mapped_column(JSON, default=list)
    max_stack: Mapped[int] = mapped_column(Integer, default=99, nullable=False)  # 0 = unlimited
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ========== Player state ==========

class QuestionAttempt(Base):
    """Append-only answer log."""

    __tablename__ = "question_attempts"
    __table_args__ = (
        Index("idx_qa_student_created", "student_id", "created_at"),
        Index("idx_qa_student_question", "student_id", "question_id"),
        Index("idx_qa_created", "created_at"),
        # a question resolves at most once per stage session; practice rows have no session
        UniqueConstraint("session_id", "question_id", name="uq_qa_session_question"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    student_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    question_id: Mapped[int] = mapped_column(BigId, ForeignKey("questions.id"), nullable=False)
    stage_id: Mapped[Optional[int]] = mapped_column(BigId, ForeignKey("stages.id"))
    session_id: Mapped[Optional[str]] = mapped_column(String(36))
    submitted_answer: Mapped[Any] = mapped_column(JSON)  # None for a skipped question
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    skipped: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    exp_gained: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gold_gained: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class StageProgress(Base):
    __tablename__ = "stage_progress"
    __table_args__ = (
        UniqueConstraint("player_id", "stage_id", name="uq_stage_progress"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    player_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    stage_id: Mapped[int] = mapped_column(BigId, ForeignKey("stages.id"), nullable=False)

    is_unlocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    best_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # percent
    total_questions_answered: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_correct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    session_id: Mapped[Optional[str]] = mapped_column(String(36))
    session_state: Mapped[str] = mapped_column(String(20), default=SessionState.NOT_STARTED.value, nullable=False)
    session_correct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    session_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    session_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class PlayerItem(Base):
    __tablename__ = "player_items"
    __table_args__ = (
        UniqueConstraint("player_id", "item_id", name="uq_player_item"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    player_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    item_id: Mapped[int] = mapped_column(BigId, ForeignKey("items.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ActiveEffect(Base):
    """One row per (player, effect type); active while ``expires_at`` is in the future."""

    __tablename__ = "active_effects"
    __table_args__ = (
        UniqueConstraint("player_id", "effect_type", name="uq_active_effect"),
        Index("idx_ae_expires", "player_id", "expires_at"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    player_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    item_id: Mapped[int] = mapped_column(BigId, ForeignKey("items.id"), nullable=False)
    effect_type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
