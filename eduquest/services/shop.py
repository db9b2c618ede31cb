import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eduquest.core.errors import ConflictError, ErrorCodes, ValidationError
from eduquest.models.orm import PlayerItem, User
from eduquest.services.items import get_item

logger = logging.getLogger(__name__)


def buy_item(db: Session, user: User, item_id: int, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    item = get_item(db, item_id)
    cost = item.price * quantity

    owned = db.scalars(
        select(PlayerItem)
        .where(PlayerItem.player_id == user.id, PlayerItem.item_id == item.id)
        .with_for_update()
    ).first()
    current = owned.quantity if owned else 0
    if item.max_stack and current + quantity > item.max_stack:
        raise ValidationError(f"You can hold at most {item.max_stack} of this item", ErrorCodes.MAX_STACK_EXCEEDED)

    paid = db.execute(
        update(User)
        .where(User.id == user.id, User.gold >= cost)
        .values(gold=User.gold - cost)
        .execution_options(synchronize_session=False)
    )
    if paid.rowcount == 0:
        raise ValidationError("Not enough gold", ErrorCodes.INSUFFICIENT_GOLD)

    if owned is None:
        db.add(PlayerItem(player_id=user.id, item_id=item.id, quantity=quantity))
        try:
            db.flush()
        except IntegrityError:
            raise ConflictError("Purchase raced with another request, please retry")
    else:
        owned.quantity = current + quantity
        db.flush()
    db.refresh(user)
    logger.info(f"User {user.id} bought {quantity}x item {item.id} for {cost} gold")
    return {"item_id": item.id, "quantity": current + quantity, "gold_spent": cost, "gold_remaining": user.gold}
