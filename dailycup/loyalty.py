from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import LoyaltyTransaction, User


def award_points(db: Session, user_id: int | None, order_id: int, reason: str, points: int) -> bool:
    """Credit points once per (order, reason). Returns False when already credited or nothing to award."""
    if not user_id or points <= 0:
        return False
    exists = db.scalar(
        select(LoyaltyTransaction.id).where(
            LoyaltyTransaction.order_id == order_id, LoyaltyTransaction.reason == reason
        )
    )
    if exists is not None:
        return False
    db.add(LoyaltyTransaction(user_id=user_id, order_id=order_id, reason=reason, points=points))
    db.flush()
    db.execute(
        update(User).where(User.id == user_id).values(loyalty_points=User.loyalty_points + points)
    )
    return True
