from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, current_principal, require_roles
from ..cod import CODLifecycle
from ..db import get_db
from ..schemas import CODRequest, CODTrackingOut
from .deps import get_cod_lifecycle

router = APIRouter(prefix="/cod", tags=["cod"])


@router.get("", response_model=List[CODTrackingOut])
def list_cod(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
    cod: CODLifecycle = Depends(get_cod_lifecycle),
):
    return cod.list_all(db, status)


@router.get("/{order_number}", response_model=CODTrackingOut)
def read_cod(
    order_number: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
    cod: CODLifecycle = Depends(get_cod_lifecycle),
):
    return cod.get(db, order_number, principal)


@router.post("")
def mutate_cod(
    payload: CODRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin", "courier")),
    cod: CODLifecycle = Depends(get_cod_lifecycle),
):
    tracking = cod.execute(db, payload, principal, defer=background.add_task)
    return {"success": True, "action": payload.action,
            "tracking": CODTrackingOut.model_validate(tracking).model_dump(mode="json")}
