from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..auth import Principal, current_principal, optional_principal, require_roles
from ..db import get_db
from ..dispatch import CourierDispatcher
from ..errors import ForbiddenError
from ..orders import OrderStateMachine, get_order
from ..schemas import AssignIn, OrderCreate, OrderCreated, OrderOut, StatusUpdateIn
from .deps import get_dispatcher, get_state_machine, rate_limited

router = APIRouter(prefix="/orders", tags=["orders"])


def order_to_out(order) -> OrderOut:
    return OrderOut.model_validate(order)


@router.post("", response_model=OrderCreated, response_model_exclude_none=True,
             dependencies=[Depends(rate_limited("order"))])
def create_order(
    payload: OrderCreate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(optional_principal),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    return machine.create(db, payload, principal, defer=background.add_task)


@router.get("/{order_number}", response_model=OrderOut)
def read_order(order_number: str, db: Session = Depends(get_db), principal: Principal = Depends(current_principal)):
    o = get_order(db, order_number)
    if principal.is_admin:
        return order_to_out(o)
    if principal.role == "courier" and o.courier_id is not None and o.courier_id == principal.courier_id:
        return order_to_out(o)
    if principal.role == "customer" and o.user_id is not None and o.user_id == principal.user_id:
        return order_to_out(o)
    raise ForbiddenError("Not allowed to view this order")


@router.post("/{order_number}/status", response_model=OrderOut)
def update_status(
    order_number: str,
    payload: StatusUpdateIn,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    o = machine.transition(db, order_number, payload.status, principal, notes=payload.notes,
                           defer=background.add_task)
    return order_to_out(o)


@router.post("/{order_number}/assign", response_model=OrderOut)
def assign_courier(
    order_number: str,
    payload: AssignIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    return order_to_out(dispatcher.assign(db, order_number, payload.courier_id, principal.actor))


@router.post("/{order_number}/photos")
def upload_photo(
    order_number: str,
    type: str = Form(...),
    photo: UploadFile = File(...),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin", "courier")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    data = photo.file.read()
    url = dispatcher.upload_photo(db, order_number, principal, kind=type, content_type=photo.content_type,
                                  data=data, filename=photo.filename or "")
    return {"success": True, "type": type, "url": url}
