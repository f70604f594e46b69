"""
Append-only audit trail partitioned by day.

``record`` writes inside the caller's transaction so the entry commits or
rolls back with the change it describes. ``record_detached`` uses its own
session for events that must persist even when the request is rejected
(signature failures, total mismatches).
"""
from datetime import date
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import AuditLog
from .utils import dumps, now_utc

logger = logging.getLogger(__name__)

LEVELS = ("info", "warning", "security")


class AuditTrail:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _entry(self, action: str, actor: Optional[str], level: str, order_ref: Optional[str], meta: Optional[dict]) -> AuditLog:
        if level not in LEVELS:
            raise ValueError(f"unknown audit level {level}")
        ts = now_utc()
        return AuditLog(
            day=ts.date(),
            action=action,
            actor=actor,
            level=level,
            order_ref=order_ref,
            meta=dumps(meta) if meta else None,
            created_at=ts,
        )

    def record(self, db: Session, action: str, *, actor: Optional[str] = None, level: str = "info",
               order_ref: Optional[str] = None, meta: Optional[dict[str, Any]] = None) -> AuditLog:
        entry = self._entry(action, actor, level, order_ref, meta)
        db.add(entry)
        return entry

    def record_detached(self, action: str, *, actor: Optional[str] = None, level: str = "security",
                        order_ref: Optional[str] = None, meta: Optional[dict[str, Any]] = None) -> None:
        if level == "security":
            logger.warning("Security event %s actor=%s order=%s meta=%s", action, actor, order_ref, meta)
        with self.session_factory.begin() as db:
            db.add(self._entry(action, actor, level, order_ref, meta))

    def read(self, db: Session, day: date, actor: Optional[str] = None, action: Optional[str] = None) -> list[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.day == day)
        if actor:
            stmt = stmt.where(AuditLog.actor == actor)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        return list(db.scalars(stmt.order_by(AuditLog.id)))


audit_trail = AuditTrail()
