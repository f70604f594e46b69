from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..audit import audit_trail
from ..auth import Principal, require_roles
from ..db import get_db
from ..schemas import AuditEntryOut
from ..utils import loads, now_utc

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=List[AuditEntryOut])
def read_audit(
    day: Optional[date] = None,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
):
    rows = audit_trail.read(db, day or now_utc().date(), actor=actor, action=action)
    return [
        AuditEntryOut(id=r.id, action=r.action, actor=r.actor, level=r.level, order_ref=r.order_ref,
                      meta=loads(r.meta), created_at=r.created_at)
        for r in rows
    ]
