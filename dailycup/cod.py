"""
Cash-on-delivery tracking.

Runs beside the order status and converges onto it: COD confirmation or
cancellation moves a pending order, and a confirmed payment settles the
order in the same transaction as the tracking row and its history entry.
The tracking row is created on the first mutation if it does not exist yet.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .audit import audit_trail
from .auth import Principal
from .db import transaction
from .effects import AfterCommit, Defer, run_now
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .metrics import COD_ACTIONS
from .models import CODStatus, CODStatusHistory, CODTracking, Order, OrderStatus, PaymentStatus
from .notify import Notifier, notifier as default_notifier
from .orders import OrderStateMachine, can_transition, get_order
from .schemas import CODRequest
from .utils import now_utc

logger = logging.getLogger(__name__)


class CODAction(str, enum.Enum):
    CREATE = "create"
    UPDATE_STATUS = "update_status"
    CONFIRM_PAYMENT = "confirm_payment"
    UPDATE = "update"


STATUS_TIMESTAMPS = {
    CODStatus.CONFIRMED: "confirmed_at",
    CODStatus.PACKED: "packed_at",
    CODStatus.OUT_FOR_DELIVERY: "out_for_delivery_at",
    CODStatus.DELIVERED: "delivered_at",
    CODStatus.CANCELLED: "cancelled_at",
}

CLOSED = (CODStatus.PAYMENT_RECEIVED, CODStatus.CANCELLED)

# COD status -> order status it pulls a pending order into
CONVERGES = {
    CODStatus.CONFIRMED: OrderStatus.CONFIRMED,
    CODStatus.CANCELLED: OrderStatus.CANCELLED,
}

PATCH_FIELDS = ("courier_name", "courier_phone", "tracking_number", "notes", "admin_notes")


@dataclass
class CODContext:
    db: Session
    order: Order
    tracking: CODTracking
    created: bool
    principal: Principal
    machine: OrderStateMachine
    notifier: Notifier
    after: AfterCommit

    @property
    def actor(self) -> str:
        return self.principal.actor

    def history(self, status: str, notes: Optional[str]) -> None:
        self.db.add(CODStatusHistory(order_id=self.order.id, status=status, actor=self.actor, notes=notes))


class CODHandler(Protocol):
    def handle(self, ctx: CODContext, req: CODRequest) -> None:
        ...


def _mark_order_paid(db: Session, order: Order) -> None:
    now = now_utc()
    res = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
        .values(payment_status=PaymentStatus.PAID, paid_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConflictError("Order payment is already settled")
    db.refresh(order)


class CreateHandler:
    def handle(self, ctx: CODContext, req: CODRequest) -> None:
        if req.notes and ctx.created:
            ctx.tracking.notes = req.notes


class UpdateStatusHandler:
    def handle(self, ctx: CODContext, req: CODRequest) -> None:
        if not req.status:
            raise ValidationError("status is required")
        try:
            target = CODStatus(req.status.strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown COD status: {req.status}")
        if target == CODStatus.PAYMENT_RECEIVED:
            raise ValidationError("Use confirm_payment to record a collected payment")
        if target not in STATUS_TIMESTAMPS:
            raise ValidationError(f"COD status {target.value} cannot be set directly")

        tracking = ctx.tracking
        current = tracking.status
        if current in CLOSED:
            raise ConflictError(f"COD tracking is closed ({current.value})")
        if current == target:
            raise ConflictError(f"COD status is already {target.value}")

        now = now_utc()
        ctx.db.flush()
        res = ctx.db.execute(
            update(CODTracking)
            .where(CODTracking.id == tracking.id, CODTracking.status == current)
            .values(status=target, updated_at=now, **{STATUS_TIMESTAMPS[target]: now})
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("COD status changed concurrently, reload and retry")
        ctx.db.refresh(tracking)
        ctx.history(target.value, req.notes)

        order_target = CONVERGES.get(target)
        if order_target and ctx.order.status == OrderStatus.PENDING and can_transition(ctx.order.status, order_target):
            ctx.machine.apply(ctx.db, ctx.order, order_target, actor=ctx.actor, after=ctx.after,
                              notes=f"COD {target.value}")

        audit_trail.record(ctx.db, "COD_STATUS_UPDATE", actor=ctx.actor, order_ref=ctx.order.order_number,
                           meta={"previous_status": current.value, "new_status": target.value})
        ctx.after.add("notify:cod_status", ctx.notifier.customer, ctx.order.user_id, "cod_status",
                      "Delivery update", f"Order {ctx.order.order_number}: {target.value.replace('_', ' ')}",
                      {"order_number": ctx.order.order_number, "status": target.value})


class ConfirmPaymentHandler:
    def handle(self, ctx: CODContext, req: CODRequest) -> None:
        tracking, order = ctx.tracking, ctx.order
        if tracking.payment_received:
            raise ConflictError("Payment already confirmed")
        if tracking.status == CODStatus.CANCELLED:
            raise ConflictError("COD tracking is cancelled")
        amount = req.amount if req.amount is not None else float(order.final_amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        now = now_utc()
        previous = tracking.status
        ctx.db.flush()
        res = ctx.db.execute(
            update(CODTracking)
            .where(CODTracking.id == tracking.id, CODTracking.payment_received.is_(False))
            .values(
                payment_received=True,
                payment_received_at=now,
                payment_amount=amount,
                payment_notes=req.payment_notes,
                receiver_name=req.receiver_name,
                receiver_relation=req.receiver_relation,
                status=CODStatus.PAYMENT_RECEIVED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Payment already confirmed")

        _mark_order_paid(ctx.db, order)
        if order.status == OrderStatus.DELIVERING:
            ctx.machine.apply(ctx.db, order, OrderStatus.COMPLETED, actor=ctx.actor, after=ctx.after,
                              notes="COD payment collected")
        elif order.status == OrderStatus.PENDING:
            ctx.machine.apply(ctx.db, order, OrderStatus.CONFIRMED, actor=ctx.actor, after=ctx.after,
                              notes="COD payment collected")

        ctx.history(CODStatus.PAYMENT_RECEIVED.value, req.payment_notes or "Payment confirmed")
        ctx.db.refresh(tracking)
        if amount + 0.005 < float(order.final_amount):
            audit_trail.record(ctx.db, "PAYMENT_AMOUNT_MISMATCH", actor=ctx.actor, level="warning",
                               order_ref=order.order_number,
                               meta={"paid": amount, "final_amount": order.final_amount})
        audit_trail.record(ctx.db, "COD_PAYMENT_CONFIRMED", actor=ctx.actor, order_ref=order.order_number,
                           meta={"previous_status": previous.value, "amount": amount,
                                 "receiver_name": req.receiver_name})
        ctx.after.add("notify:cod_paid", ctx.notifier.customer, order.user_id, "payment", "Payment received",
                      f"Cash payment for order {order.order_number} has been received",
                      {"order_number": order.order_number, "amount": amount})
        ctx.after.add("admin:cod_paid", ctx.notifier.admins, "payment", "COD payment collected",
                      f"Order {order.order_number}: {amount:,.0f} collected", order.id)


class UpdateHandler:
    def handle(self, ctx: CODContext, req: CODRequest) -> None:
        changes = {f: getattr(req, f) for f in PATCH_FIELDS if getattr(req, f) is not None}
        if not changes:
            raise ValidationError("No fields to update")
        if "admin_notes" in changes and not ctx.principal.is_admin:
            raise ForbiddenError("Only admins can write admin notes")
        tracking = ctx.tracking
        courier_changed = "courier_name" in changes and changes["courier_name"] != tracking.courier_name
        for field, value in changes.items():
            setattr(tracking, field, value)
        tracking.updated_at = now_utc()
        if courier_changed:
            ctx.history(tracking.status.value, f"Courier assigned: {changes['courier_name']}")
        audit_trail.record(ctx.db, "COD_UPDATE", actor=ctx.actor, order_ref=ctx.order.order_number,
                           meta={"fields": sorted(changes)})


class CODLifecycle:
    def __init__(self, machine: OrderStateMachine, notifier: Optional[Notifier] = None):
        self.machine = machine
        self.notifier = notifier or default_notifier
        self.handlers: dict[CODAction, CODHandler] = {
            CODAction.CREATE: CreateHandler(),
            CODAction.UPDATE_STATUS: UpdateStatusHandler(),
            CODAction.CONFIRM_PAYMENT: ConfirmPaymentHandler(),
            CODAction.UPDATE: UpdateHandler(),
        }

    def _ensure_tracking(self, db: Session, order: Order, actor: str) -> tuple[CODTracking, bool]:
        tracking = db.scalar(select(CODTracking).where(CODTracking.order_id == order.id))
        if tracking is not None:
            return tracking, False
        tracking = CODTracking(order_id=order.id, status=CODStatus.PENDING)
        db.add(tracking)
        db.add(CODStatusHistory(order_id=order.id, status=CODStatus.PENDING.value, actor=actor,
                                notes="Tracking created"))
        db.flush()
        return tracking, True

    def _authorize(self, principal: Principal, order: Order) -> None:
        if principal.is_admin:
            return
        if principal.role == "courier" and order.courier_id is not None and order.courier_id == principal.courier_id:
            return
        raise ForbiddenError("Not allowed to update COD tracking for this order")

    def execute(self, db: Session, req: CODRequest, principal: Principal, defer: Defer = run_now) -> dict[str, Any]:
        try:
            action = CODAction(req.action)
        except ValueError:
            raise ValidationError(f"Unknown action: {req.action}")
        handler = self.handlers[action]
        after = AfterCommit()
        with transaction(db):
            order = get_order(db, req.order_id)
            if not order.is_cod:
                raise ValidationError("Order is not a cash on delivery order")
            self._authorize(principal, order)
            tracking, created = self._ensure_tracking(db, order, principal.actor)
            ctx = CODContext(db=db, order=order, tracking=tracking, created=created, principal=principal,
                             machine=self.machine, notifier=self.notifier, after=after)
            handler.handle(ctx, req)
        COD_ACTIONS.labels(action.value).inc()
        logger.info("COD %s on %s by %s", action.value, order.order_number, principal.actor)
        after.run(defer)
        return self.view(db, order)

    def get(self, db: Session, order_number: str, principal: Principal) -> dict[str, Any]:
        order = get_order(db, order_number)
        allowed = (
            principal.is_admin
            or (principal.role == "courier" and order.courier_id is not None and order.courier_id == principal.courier_id)
            or (principal.role == "customer" and order.user_id is not None and order.user_id == principal.user_id)
        )
        if not allowed:
            raise ForbiddenError("Not allowed to view this order")
        return self.view(db, order)

    def list_all(self, db: Session, status: Optional[str] = None) -> list[dict[str, Any]]:
        stmt = select(CODTracking, Order).join(Order, Order.id == CODTracking.order_id)
        if status:
            try:
                stmt = stmt.where(CODTracking.status == CODStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown COD status: {status}")
        rows = db.execute(stmt.order_by(CODTracking.updated_at.desc(), CODTracking.id.desc())).all()
        return [self._row(tracking, order, history=[]) for tracking, order in rows]

    def view(self, db: Session, order: Order) -> dict[str, Any]:
        tracking = db.scalar(select(CODTracking).where(CODTracking.order_id == order.id))
        if tracking is None:
            raise NotFoundError("COD tracking not found")
        history = db.scalars(
            select(CODStatusHistory)
            .where(CODStatusHistory.order_id == order.id)
            .order_by(CODStatusHistory.created_at, CODStatusHistory.id)
        ).all()
        return self._row(tracking, order, history)

    def _row(self, tracking: CODTracking, order: Order, history) -> dict[str, Any]:
        return {
            "order_number": order.order_number,
            "status": tracking.status.value,
            "courier_name": tracking.courier_name,
            "courier_phone": tracking.courier_phone,
            "tracking_number": tracking.tracking_number,
            "notes": tracking.notes,
            "admin_notes": tracking.admin_notes,
            "confirmed_at": tracking.confirmed_at,
            "packed_at": tracking.packed_at,
            "out_for_delivery_at": tracking.out_for_delivery_at,
            "delivered_at": tracking.delivered_at,
            "cancelled_at": tracking.cancelled_at,
            "payment_received": bool(tracking.payment_received),
            "payment_received_at": tracking.payment_received_at,
            "payment_amount": tracking.payment_amount,
            "receiver_name": tracking.receiver_name,
            "receiver_relation": tracking.receiver_relation,
            "history": [
                {"status": h.status, "actor": h.actor, "notes": h.notes, "created_at": h.created_at}
                for h in history
            ],
        }
