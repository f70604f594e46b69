import random
from time import time

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ConflictError
from .models import Order


def next_order_number(session: Session, prefix: str = "ORD") -> str:
    """``ORD-<unix seconds>-<4 digits>``, retried until no existing order carries it."""
    attempt = 0
    while attempt < 20:
        candidate = f"{prefix}-{int(time())}-{random.randint(1000, 9999)}"
        taken = session.scalar(select(Order.id).where(Order.order_number == candidate))
        if taken is None:
            return candidate
        attempt += 1
    raise ConflictError("Could not allocate an order number")
