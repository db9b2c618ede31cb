"""
Item and effect engine.

Quantities are decremented with a guarded UPDATE so two back-to-back uses can
never drive a row below zero; a row that reaches zero is deleted. Timed
effects live in ``active_effects`` with one row per (player, effect type):
using a second item of the same type extends the expiry instead of adding a
row.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eduquest.core.config import settings
from eduquest.core.database import utcnow
from eduquest.core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from eduquest.models.orm import (
    DURATION_EFFECTS, EQUIPMENT_SLOTS, QUIZ_EFFECTS, ActiveEffect, EffectType, Item, ItemType,
    PlayerItem, Question, QuestionAttempt, QuestionType, User,
)
from eduquest.services import sessions
from eduquest.services.evaluator import as_list, normalize

logger = logging.getLogger(__name__)

ENCOURAGEMENT = "Read the question carefully and trust what you have learned!"


def get_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if item is None or not item.is_active:
        raise NotFoundError("Item not found", ErrorCodes.ITEM_NOT_FOUND)
    return item


def owned_quantity(db: Session, player_id: str, item_id: int) -> int:
    stmt = select(PlayerItem.quantity).where(PlayerItem.player_id == player_id, PlayerItem.item_id == item_id)
    return db.scalar(stmt) or 0


def consume_one(db: Session, player_id: str, item_id: int) -> int:
    """Take one unit; returns the quantity left."""
    result = db.execute(
        update(PlayerItem)
        .where(PlayerItem.player_id == player_id, PlayerItem.item_id == item_id, PlayerItem.quantity >= 1)
        .values(quantity=PlayerItem.quantity - 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ValidationError("Not enough of this item", ErrorCodes.INSUFFICIENT_QUANTITY)
    db.execute(
        delete(PlayerItem)
        .where(PlayerItem.player_id == player_id, PlayerItem.item_id == item_id, PlayerItem.quantity <= 0)
        .execution_options(synchronize_session=False)
    )
    return owned_quantity(db, player_id, item_id)


# ---------- effects ----------

def active_effects(db: Session, player_id: str, now: datetime = None) -> Dict[str, ActiveEffect]:
    """Unexpired effects keyed by effect type. Expiry is evaluated here, at read time."""
    now = now or utcnow()
    stmt = select(ActiveEffect).where(ActiveEffect.player_id == player_id, ActiveEffect.expires_at > now)
    return {e.effect_type: e for e in db.scalars(stmt)}


def apply_duration_effect(db: Session, player_id: str, item_id: int, effect: Dict[str, Any], now: datetime) -> ActiveEffect:
    minutes = effect.get("duration") or settings.DEFAULT_EFFECT_MINUTES
    duration = timedelta(minutes=minutes)
    value = float(effect.get("value", 1))
    stmt = (
        select(ActiveEffect)
        .where(ActiveEffect.player_id == player_id, ActiveEffect.effect_type == effect["type"])
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = db.scalars(stmt).first()
    if row is None:
        row = ActiveEffect(player_id=player_id, item_id=item_id, effect_type=effect["type"],
                           value=value, expires_at=now + duration)
        db.add(row)
        try:
            db.flush()
        except IntegrityError:
            raise ConflictError("Effect was applied concurrently, please retry")
    elif row.expires_at > now:
        row.expires_at = row.expires_at + duration
    else:
        row.item_id = item_id
        row.value = value
        row.expires_at = now + duration
    return row


def effect_view(effect: ActiveEffect, now: datetime) -> dict:
    remaining = max(0.0, (effect.expires_at - now).total_seconds() / 60)
    return {
        "type": effect.effect_type,
        "value": effect.value,
        "item_id": effect.item_id,
        "expires_at": effect.expires_at,
        "remaining_minutes": int(remaining + 0.999),
    }


def use_consumable(db: Session, user: User, item_id: int) -> dict:
    item = get_item(db, item_id)
    if item.type != ItemType.CONSUMABLE.value:
        raise ValidationError("Only consumable items can be used")
    timed = [e for e in (item.effects or []) if e.get("type") in DURATION_EFFECTS]
    if not timed:
        raise ValidationError("This item can only be used during a quiz")

    remaining = consume_one(db, user.id, item.id)
    now = utcnow()
    applied = [effect_view(apply_duration_effect(db, user.id, item.id, e, now), now) for e in timed]
    db.flush()
    logger.info(f"User {user.id} used item {item.id}: {[e['type'] for e in applied]}")
    return {"item_id": item.id, "applied_effects": applied, "remaining_quantity": remaining}


# ---------- quiz-time items ----------

def _option_text(question: Question, option_id: Any) -> str:
    for opt in question.options or []:
        if normalize(opt.get("id")) == normalize(option_id):
            return opt.get("text", str(option_id))
    return str(option_id)


def readable_answer(question: Question) -> str:
    correct = question.answer_correct
    if question.type == QuestionType.TRUE_FALSE.value:
        values = as_list(correct)
        return "True" if values and normalize(values[0]) == "true" else "False"
    if question.type in (QuestionType.SINGLE_CHOICE.value, QuestionType.MULTIPLE_CHOICE.value):
        return ", ".join(_option_text(question, v) for v in as_list(correct))
    return ", ".join(str(v) for v in as_list(correct))


def build_hint(question: Question, rng: random.Random = None) -> dict:
    """Never reveals the correct answer."""
    explanation = (question.answer_explanation or "").strip()
    if explanation:
        limit = settings.HINT_MAX_CHARS
        text = explanation if len(explanation) <= limit else explanation[:limit] + "..."
        return {"hint": text}
    if question.type in (QuestionType.SINGLE_CHOICE.value, QuestionType.MULTIPLE_CHOICE.value):
        correct = {normalize(v) for v in as_list(question.answer_correct)}
        wrong = [o for o in question.options or [] if normalize(o.get("id")) not in correct]
        if wrong:
            opt = (rng or random).choice(wrong)
            return {"hint": f"Option {opt['id']} is not the answer", "eliminated_option": opt["id"]}
    return {"hint": ENCOURAGEMENT}


def quiz_items(db: Session, player_id: str) -> List[dict]:
    stmt = (
        select(PlayerItem, Item)
        .join(Item, Item.id == PlayerItem.item_id)
        .where(PlayerItem.player_id == player_id, Item.type == ItemType.CONSUMABLE.value)
    )
    out = []
    for owned, item in db.execute(stmt):
        kinds = [e.get("type") for e in item.effects or [] if e.get("type") in QUIZ_EFFECTS]
        if kinds:
            out.append({"item_id": item.id, "name": item.name, "icon": item.icon,
                        "effects": kinds, "quantity": owned.quantity})
    return out


def use_quiz_item(db: Session, user: User, item_id: int, question_id: int, stage_id: Optional[int] = None) -> dict:
    """Use a hint or skip item on a question.

    A skip inside a stage resolves the question for the open session: it is
    logged as an unrewarded, incorrect attempt and counts toward the session
    total. The same question cannot be skipped or answered again in that
    session.
    """
    item = get_item(db, item_id)
    kinds = [e.get("type") for e in item.effects or []]
    if item.type != ItemType.CONSUMABLE.value or not any(k in QUIZ_EFFECTS for k in kinds):
        raise ValidationError("This item cannot be used during a quiz")
    question = db.get(Question, question_id)
    if question is None or not question.is_active:
        raise NotFoundError("Question not found", ErrorCodes.QUESTION_NOT_FOUND)
    skip = EffectType.SKIP.value in kinds
    stage = progress = None
    if skip and stage_id is not None:
        stage = sessions.get_active_stage(db, stage_id)
        progress = sessions.claim_session_question(db, user.id, stage, question)

    remaining = consume_one(db, user.id, item.id)
    result: Dict[str, Any] = {"item_id": item.id, "question_id": question.id, "remaining_quantity": remaining}
    if EffectType.HINT.value in kinds:
        result.update(build_hint(question))
    if skip:
        result["skip"] = True
        result["correct_answer"] = readable_answer(question)
        result["session_advanced"] = False
        if progress is not None:
            sessions.log_session_attempt(db, QuestionAttempt(
                student_id=user.id, question_id=question.id, stage_id=stage.id, session_id=progress.session_id,
                submitted_answer=None, is_correct=False, skipped=True, exp_gained=0, gold_gained=0,
            ))
            progress = sessions.advance_session(db, progress, stage, is_correct=False)
            result["session_advanced"] = True
            result["progress"] = sessions.progress_snapshot(progress)
    logger.info(f"User {user.id} used quiz item {item.id} on question {question.id}")
    return result


# ---------- inventory ----------

def inventory(db: Session, user: User) -> dict:
    stmt = (
        select(PlayerItem, Item)
        .join(Item, Item.id == PlayerItem.item_id)
        .where(PlayerItem.player_id == user.id)
        .order_by(Item.type, Item.id)
    )
    items = [
        {
            "item_id": item.id, "name": item.name, "description": item.description, "type": item.type,
            "rarity": item.rarity, "slot": item.slot, "icon": item.icon, "effects": item.effects or [],
            "quantity": owned.quantity, "acquired_at": owned.acquired_at,
        }
        for owned, item in db.execute(stmt)
    ]
    return {"items": items, "active_effects": current_effects(db, user.id), "equipped": dict(user.equipped_items or {})}


def equip(db: Session, user: User, item_id: int) -> dict:
    item = get_item(db, item_id)
    if item.type == ItemType.CONSUMABLE.value or item.slot not in EQUIPMENT_SLOTS:
        raise ValidationError("This item cannot be equipped")
    if owned_quantity(db, user.id, item.id) < 1:
        raise ValidationError("You do not own this item", ErrorCodes.INSUFFICIENT_QUANTITY)
    # reassign so the JSON column is flagged dirty
    user.equipped_items = {**(user.equipped_items or {}), item.slot: item.id}
    db.flush()
    return {"equipped": dict(user.equipped_items)}


def unequip(db: Session, user: User, slot: str) -> dict:
    if slot not in EQUIPMENT_SLOTS:
        raise ValidationError(f"Invalid slot: {slot}")
    equipped = dict(user.equipped_items or {})
    equipped.pop(slot, None)
    user.equipped_items = equipped
    db.flush()
    return {"equipped": equipped}


def current_effects(db: Session, player_id: str) -> List[dict]:
    now = utcnow()
    return [effect_view(e, now) for e in active_effects(db, player_id, now).values()]
