from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, require_roles
from ..db import get_db
from ..dispatch import CourierDispatcher
from ..schemas import AvailabilityIn, CourierCreate, CourierOut, LocationIn
from .deps import get_dispatcher, rate_limited

router = APIRouter(prefix="/couriers", tags=["couriers"])


@router.post("", response_model=CourierOut)
def create_courier(
    payload: CourierCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    return dispatcher.create_courier(db, name=payload.name, phone=payload.phone, vehicle_type=payload.vehicle_type,
                                     rating=payload.rating, actor=principal.actor)


@router.get("", response_model=List[CourierOut])
def list_couriers(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    return dispatcher.list_couriers(db, status)


@router.post("/me/availability", response_model=CourierOut)
def set_availability(
    payload: AvailabilityIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("courier")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    return dispatcher.set_availability(db, principal.courier_id, payload.status)


@router.post("/me/location", dependencies=[Depends(rate_limited("location"))])
def post_location(
    payload: LocationIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("courier")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    events = dispatcher.ingest_ping(db, principal.courier_id, latitude=payload.latitude,
                                    longitude=payload.longitude, accuracy=payload.accuracy, speed=payload.speed)
    return {"success": True, "orders": events}
