"""
Payment webhook reconciliation.

Delivery is at-least-once. A receipt row keyed on (external_id, status)
marks a delivery as seen, and every payment write is conditional on
``payment_status == 'pending'``, so replays and out-of-order callbacks
cannot award points or send notifications twice.
"""
import hashlib
import hmac
import logging
import math
from typing import Any, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import audit_trail
from .config import Settings
from .db import transaction
from .dispatch import ASSIGNABLE_STATUSES, CourierDispatcher
from .effects import AfterCommit, Defer, run_now
from .errors import AuthError, NotFoundError, PersistenceError, ValidationError
from .loyalty import award_points
from .metrics import WEBHOOK_OUTCOMES
from .models import DeliveryMethod, Order, OrderStatus, PaymentStatus, WebhookReceipt
from .notify import Notifier, notifier as default_notifier
from .orders import OrderStateMachine, can_transition
from .utils import now_utc

logger = logging.getLogger(__name__)

ACTOR = "webhook:xendit"
SIGNATURE_HEADER = "x-callback-signature"
TOKEN_HEADER = "x-callback-token"

PAID_STATUSES = frozenset({"PAID", "SETTLED"})
FAILED_STATUSES = frozenset({"EXPIRED", "FAILED"})

# Provider outcomes move an order out of either of these, bypassing the manual graph
PAYABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _same(a: Optional[str], b: str) -> bool:
    if not a:
        return False
    return hmac.compare_digest(a.strip().encode(), b.encode())


class PaymentWebhookReconciler:
    def __init__(self, settings: Settings, machine: OrderStateMachine,
                 dispatcher: Optional[CourierDispatcher] = None, notifier: Optional[Notifier] = None):
        self.settings = settings
        self.machine = machine
        self.dispatcher = dispatcher or CourierDispatcher(settings)
        self.notifier = notifier or default_notifier

    def verify(self, body: bytes, headers: Mapping[str, str], query_token: Optional[str] = None,
               client_ip: Optional[str] = None) -> None:
        """HMAC over the raw body when a secret is configured, else the static callback token."""
        if self.settings.WEBHOOK_SECRET:
            method = "hmac"
            ok = _same(headers.get(SIGNATURE_HEADER), sign(self.settings.WEBHOOK_SECRET, body))
        elif self.settings.WEBHOOK_CALLBACK_TOKEN:
            method = "token"
            ok = _same(headers.get(TOKEN_HEADER) or query_token, self.settings.WEBHOOK_CALLBACK_TOKEN)
        else:
            method = "unconfigured"
            ok = False
        if ok:
            return
        WEBHOOK_OUTCOMES.labels("rejected").inc()
        audit_trail.record_detached("WEBHOOK_VERIFICATION_FAILED", actor=ACTOR, level="security",
                                    meta={"method": method, "ip": client_ip})
        raise AuthError("Invalid webhook signature")

    def handle(self, db: Session, payload: Mapping[str, Any], defer: Defer = run_now) -> dict[str, Any]:
        external_id = str(payload.get("external_id") or "").strip()
        provider_status = str(payload.get("status") or "").strip().upper()
        if not external_id or not provider_status:
            raise ValidationError("external_id and status are required")

        order = db.scalar(select(Order).where(Order.order_number == external_id))
        if order is None:
            WEBHOOK_OUTCOMES.labels("not_found").inc()
            logger.warning("Webhook for unknown order %s status=%s", external_id, provider_status)
            raise NotFoundError("Order not found")

        seen = db.scalar(select(WebhookReceipt.id).where(
            WebhookReceipt.external_id == external_id, WebhookReceipt.provider_status == provider_status))
        if seen is not None:
            WEBHOOK_OUTCOMES.labels("duplicate").inc()
            return {"success": True, "duplicate": True}

        after = AfterCommit()
        try:
            with transaction(db):
                db.add(WebhookReceipt(external_id=external_id, provider_status=provider_status,
                                      provider_payment_id=payload.get("id"), amount=_amount(payload)))
                db.flush()
                outcome = self._apply(db, order, provider_status, payload, after)
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                WEBHOOK_OUTCOMES.labels("duplicate").inc()
                return {"success": True, "duplicate": True}
            raise
        WEBHOOK_OUTCOMES.labels(outcome).inc()
        after.run(defer)
        return {"success": True}

    def _apply(self, db: Session, order: Order, provider_status: str, payload: Mapping[str, Any],
               after: AfterCommit) -> str:
        if provider_status in PAID_STATUSES:
            return self._paid(db, order, payload, after)
        if provider_status in FAILED_STATUSES:
            return self._failed(db, order, provider_status, after)
        return self._other(db, order, provider_status, after)

    def _settle_payment(self, db: Session, order: Order, new: PaymentStatus, **values: Any) -> bool:
        now = now_utc()
        res = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
            .values(payment_status=new, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(order)
        return res.rowcount == 1

    def _paid(self, db: Session, order: Order, payload: Mapping[str, Any], after: AfterCommit) -> str:
        previous = order.status
        if not self._settle_payment(db, order, PaymentStatus.PAID, paid_at=now_utc(),
                                    provider_payment_id=payload.get("id")):
            audit_trail.record(db, "WEBHOOK_IGNORED", actor=ACTOR, order_ref=order.order_number,
                               meta={"status": "PAID", "payment_status": order.payment_status.value})
            return "noop"

        if order.status in PAYABLE_ORDER_STATUSES:
            self.machine.apply(db, order, OrderStatus.PROCESSING, actor=ACTOR, after=after, notes="Payment received")

        amount = _amount(payload)
        if amount is not None and amount + 0.005 < float(order.final_amount):
            logger.warning("Order %s paid %s below final amount %s", order.order_number, amount, order.final_amount)
            audit_trail.record(db, "PAYMENT_AMOUNT_MISMATCH", actor=ACTOR, level="warning",
                               order_ref=order.order_number,
                               meta={"paid": amount, "final_amount": order.final_amount})

        points = math.floor((amount if amount is not None else order.final_amount) / self.settings.LOYALTY_AMOUNT_PER_POINT)
        award_points(db, order.user_id, order.id, "payment", points)

        audit_trail.record(db, "PAYMENT_RECEIVED", actor=ACTOR, order_ref=order.order_number,
                           meta={"previous_status": previous.value, "new_status": order.status.value,
                                 "previous_payment_status": PaymentStatus.PENDING.value,
                                 "new_payment_status": PaymentStatus.PAID.value,
                                 "provider_payment_id": payload.get("id"), "amount": amount})

        if (order.delivery_method == DeliveryMethod.DELIVERY and not order.is_cod and order.courier_id is None
                and order.status in ASSIGNABLE_STATUSES):
            self.dispatcher.auto_assign(db, order, ACTOR)

        after.add("notify:payment", self.notifier.customer, order.user_id, "payment", "Payment received",
                  f"Payment for order {order.order_number} has been received",
                  {"order_number": order.order_number})
        after.add("email:payment", self.notifier.email, order.customer_email,
                  f"Payment received for {order.order_number}",
                  f"Hi {order.customer_name}, we have received your payment. Your order is being prepared.")
        after.add("admin:payment", self.notifier.admins, "payment", "Payment received",
                  f"Order {order.order_number} has been paid", order.id)
        return "paid"

    def _failed(self, db: Session, order: Order, provider_status: str, after: AfterCommit) -> str:
        if not self._settle_payment(db, order, PaymentStatus.FAILED):
            audit_trail.record(db, "WEBHOOK_IGNORED", actor=ACTOR, order_ref=order.order_number,
                               meta={"status": provider_status, "payment_status": order.payment_status.value})
            return "noop"
        if order.status in PAYABLE_ORDER_STATUSES:
            self.machine.apply(db, order, OrderStatus.CANCELLED, actor=ACTOR, after=after,
                               notes=f"Payment {provider_status.lower()}")
        audit_trail.record(db, "PAYMENT_FAILED", actor=ACTOR, level="warning", order_ref=order.order_number,
                           meta={"status": provider_status})
        after.add("notify:payment_failed", self.notifier.customer, order.user_id, "payment", "Payment failed",
                  f"Payment for order {order.order_number} was not completed",
                  {"order_number": order.order_number, "status": provider_status})
        return "failed"

    def _other(self, db: Session, order: Order, provider_status: str, after: AfterCommit) -> str:
        try:
            target = OrderStatus(provider_status.lower())
        except ValueError:
            target = None
        if target is None or target == order.status or not can_transition(order.status, target):
            audit_trail.record(db, "WEBHOOK_IGNORED", actor=ACTOR, level="warning", order_ref=order.order_number,
                               meta={"status": provider_status, "order_status": order.status.value})
            return "ignored"
        self.machine.apply(db, order, target, actor=ACTOR, after=after, notes=f"Provider status {provider_status}")
        return "status"


def _amount(payload: Mapping[str, Any]) -> Optional[float]:
    raw = payload.get("paid_amount", payload.get("amount"))
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None
