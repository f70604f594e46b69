from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..auth import Principal, require_roles
from ..db import get_db, transaction
from ..geocode import GeocodeQueue
from ..models import GeocodeStatus, Order
from ..orders import get_order
from ..schemas import GeocodeFailureOut
from .deps import get_geocode_queue

router = APIRouter(tags=["geocode"])


@router.post("/orders/{order_number}/geocode")
def enqueue_geocode(
    order_number: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
    queue: GeocodeQueue = Depends(get_geocode_queue),
):
    with transaction(db):
        order = get_order(db, order_number)
        job = queue.enqueue(db, order, reset=True)
    return {"success": True, "job_id": job.id, "status": job.status.value}


@router.get("/geocode/failures", response_model=List[GeocodeFailureOut])
def geocode_failures(
    limit: int = 100,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
):
    rows = db.scalars(
        select(Order)
        .where(or_(Order.geocode_status == GeocodeStatus.FAILED, Order.geocode_attempts > 0))
        .order_by(Order.geocode_attempts.desc(), Order.id.desc())
        .limit(min(limit, 500))
    ).all()
    return [
        GeocodeFailureOut(
            order_number=o.order_number,
            delivery_address=o.delivery_address,
            geocode_status=o.geocode_status.value,
            geocode_attempts=o.geocode_attempts,
            geocode_error=o.geocode_error,
        )
        for o in rows
    ]
