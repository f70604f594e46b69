"""
Order creation and the order status graph.

Every status write is a conditional UPDATE on the status the caller read;
zero affected rows means someone else moved the order first and the whole
transaction is rolled back with a Conflict.
"""
import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .audit import audit_trail
from .auth import Principal
from .codes import next_order_number
from .config import Settings
from .db import transaction
from .dispatch import mark_busy, release_if_idle
from .effects import AfterCommit, Defer, run_now
from .errors import AuthError, ConflictError, ExternalServiceError, ForbiddenError, NotFoundError, ValidationError
from .loyalty import award_points
from .metrics import ORDER_REJECTED, ORDER_TRANSITIONS, ORDERS_CREATED
from .models import (
    CODStatus, CODStatusHistory, CODTracking, Courier, DeliveryHistory, DeliveryMethod, GeocodeJob,
    GeocodeStatus, Order, OrderItem, OrderStatus, User,
)
from .notify import Notifier, notifier as default_notifier
from .payments import InvoiceClient
from .schemas import OrderCreate
from .tracking import hub
from .utils import now_utc

logger = logging.getLogger(__name__)

SUCCESSORS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.READY}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERING}),
    OrderStatus.DELIVERING: frozenset({OrderStatus.COMPLETED}),
}

# The only moves a courier may request, and only on orders assigned to them
COURIER_PATH = {
    OrderStatus.CONFIRMED: OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.DELIVERING,
    OrderStatus.DELIVERING: OrderStatus.COMPLETED,
}

TERMINAL = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

STATUS_MESSAGES = {
    OrderStatus.CONFIRMED: "Your order has been confirmed",
    OrderStatus.PROCESSING: "Your order is being prepared",
    OrderStatus.READY: "Your order is ready",
    OrderStatus.DELIVERING: "Your order is on the way",
    OrderStatus.COMPLETED: "Your order has been delivered. Enjoy!",
    OrderStatus.CANCELLED: "Your order has been cancelled",
}


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus((value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid status: {value}")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in SUCCESSORS.get(current, ())


def authorize_transition(principal: Principal, order: Order, current: OrderStatus, target: OrderStatus) -> None:
    if principal.is_admin:
        return
    if principal.role == "courier":
        if order.courier_id is None or order.courier_id != principal.courier_id:
            raise ForbiddenError("Order is not assigned to you")
        if COURIER_PATH.get(current) != target:
            raise ForbiddenError(f"Couriers cannot change status from {current.value} to {target.value}")
        return
    if principal.role == "customer":
        if order.user_id is None or order.user_id != principal.user_id:
            raise ForbiddenError("Not your order")
        if not (current == OrderStatus.PENDING and target == OrderStatus.CANCELLED):
            raise ForbiddenError("Customers can only cancel pending orders")
        return
    raise ForbiddenError("Insufficient role")


def get_order(db: Session, order_number: str) -> Order:
    order = db.scalar(select(Order).where(Order.order_number == order_number))
    if order is None:
        raise NotFoundError("Order not found")
    return order


class OrderStateMachine:
    def __init__(self, settings: Settings, notifier: Optional[Notifier] = None,
                 invoices: Optional[InvoiceClient] = None):
        self.settings = settings
        self.notifier = notifier or default_notifier
        self.invoices = invoices or InvoiceClient(settings)

    # Creation

    def _check_totals(self, payload: OrderCreate, actor: str) -> tuple[float, float]:
        subtotal = round(sum(item.price * item.quantity for item in payload.items), 2)
        final = round(subtotal + payload.deliveryFee - payload.discount, 2)
        claimed = float(payload.total)
        if abs(final - claimed) > claimed * self.settings.TOTAL_TOLERANCE:
            ORDER_REJECTED.labels("total_mismatch").inc()
            audit_trail.record_detached(
                "TOTAL_MISMATCH", actor=actor, level="security",
                meta={"calculated": final, "claimed": claimed, "subtotal": subtotal,
                      "delivery_fee": payload.deliveryFee, "discount": payload.discount},
            )
            raise ValidationError("Order total mismatch", calculated=final, claimed=claimed)
        return subtotal, final

    def _validate(self, payload: OrderCreate, principal: Optional[Principal]) -> None:
        customer = payload.customer
        if not (customer.name or "").strip() or not (customer.email or "").strip():
            ORDER_REJECTED.labels("missing_customer").inc()
            raise ValidationError("Customer name and email are required")
        if not payload.items:
            raise ValidationError("Order has no items")
        if payload.total <= 0:
            raise ValidationError("Order total must be positive")
        if payload.deliveryMethod == DeliveryMethod.DELIVERY.value and not (customer.address or "").strip():
            raise ValidationError("Delivery address is required for delivery orders")
        if payload.paymentMethod == "cod" and (principal is None or principal.user_id is None):
            raise AuthError("Login required for cash on delivery")

    def create(self, db: Session, payload: OrderCreate, principal: Optional[Principal] = None,
               defer: Defer = run_now) -> dict[str, Any]:
        actor = principal.actor if principal else "guest"
        self._validate(payload, principal)
        subtotal, final = self._check_totals(payload, actor)
        is_cod = payload.paymentMethod == "cod"
        if is_cod and final > self.settings.COD_MAX_AMOUNT:
            ORDER_REJECTED.labels("cod_limit").inc()
            raise ValidationError("Order total exceeds the cash on delivery limit",
                                  max_amount=self.settings.COD_MAX_AMOUNT)

        customer = payload.customer
        has_coords = customer.lat is not None and customer.lng is not None
        is_delivery = payload.deliveryMethod == DeliveryMethod.DELIVERY.value

        with transaction(db):
            order = Order(
                order_number=next_order_number(db),
                user_id=principal.user_id if principal and principal.role == "customer" else None,
                customer_name=customer.name.strip(),
                customer_email=customer.email.strip(),
                customer_phone=customer.phone,
                notes=payload.notes,
                status=OrderStatus.PENDING,
                payment_method=payload.paymentMethod,
                subtotal=subtotal,
                discount=payload.discount,
                delivery_fee=payload.deliveryFee,
                final_amount=final,
                delivery_method=DeliveryMethod(payload.deliveryMethod),
                delivery_address=customer.address,
                delivery_lat=customer.lat if has_coords else None,
                delivery_lng=customer.lng if has_coords else None,
                geocode_status=GeocodeStatus.OK if has_coords else GeocodeStatus.PENDING,
            )
            for item in payload.items:
                order.items.append(OrderItem(
                    product_id=item.id,
                    product_name=item.name,
                    unit_price=item.price,
                    quantity=item.quantity,
                    subtotal=round(item.price * item.quantity, 2),
                    notes=item.notes,
                ))
            db.add(order)
            db.flush()

            if is_cod:
                db.add(CODTracking(order_id=order.id, status=CODStatus.PENDING))
                db.add(CODStatusHistory(order_id=order.id, status=CODStatus.PENDING.value, actor=actor,
                                        notes="COD order created"))
            if is_delivery and not has_coords:
                db.add(GeocodeJob(order_id=order.id))
            db.add(DeliveryHistory(order_id=order.id, from_status=None, status=OrderStatus.PENDING.value,
                                   actor=actor, notes="Order created"))
            audit_trail.record(db, "ORDER_CREATE", actor=actor, order_ref=order.order_number,
                               meta={"final_amount": final, "payment_method": payload.paymentMethod,
                                     "delivery_method": payload.deliveryMethod})

        ORDERS_CREATED.labels(payload.paymentMethod).inc()
        logger.info("Order %s created by %s total=%s", order.order_number, actor, final)

        response: dict[str, Any] = {"success": True, "orderId": order.order_number,
                                    "order_number": order.order_number}
        if is_cod:
            response["redirect"] = f"/orders/{order.order_number}"
        else:
            try:
                response["invoice_url"] = self.invoices.create_invoice(order)
            except ExternalServiceError as exc:
                logger.warning("Invoice for %s unavailable, using mock checkout: %s", order.order_number, exc.message)
                response["redirect"] = f"/checkout/payment?orderId={order.order_number}&mock=true"

        after = AfterCommit()
        after.add("notify:order_created", self.notifier.customer, order.user_id, "order_created",
                  "Order placed", f"Order {order.order_number} has been placed",
                  {"order_number": order.order_number})
        after.add("notify:new_order", self.notifier.admins, "new_order", "New order",
                  f"New order {order.order_number} from {order.customer_name}", order.id)
        after.add("email:order_created", self.notifier.email, order.customer_email,
                  f"DailyCup order {order.order_number}",
                  f"Thank you {order.customer_name}, your order total is {final:,.0f}.")
        after.run(defer)
        return response

    # Transitions

    def transition(self, db: Session, order_number: str, requested: str, principal: Principal,
                   notes: Optional[str] = None, defer: Defer = run_now) -> Order:
        target = parse_status(requested)
        after = AfterCommit()
        with transaction(db):
            order = get_order(db, order_number)
            current = order.status
            if not can_transition(current, target):
                raise ConflictError(f"Cannot change status from {current.value} to {target.value}",
                                    current=current.value, requested=target.value)
            authorize_transition(principal, order, current, target)
            self.apply(db, order, target, actor=principal.actor, after=after, notes=notes)
        after.run(defer)
        return order

    def _check_evidence(self, order: Order, target: OrderStatus) -> None:
        if not self.settings.DELIVERY_PHOTO_REQUIRED:
            return
        if target == OrderStatus.DELIVERING and not order.departure_photo_url:
            raise ValidationError("A departure photo is required before delivery")
        if target == OrderStatus.COMPLETED and not order.arrival_photo_url:
            raise ValidationError("An arrival photo is required to complete the delivery")

    def apply(self, db: Session, order: Order, target: OrderStatus, *, actor: str, after: AfterCommit,
              notes: Optional[str] = None, extra: Optional[dict[str, Any]] = None) -> OrderStatus:
        """Write ``target`` and its side effects inside the caller's transaction.

        Callers own the graph check; this only guards against a concurrent
        writer having moved the order since it was read.
        """
        current = order.status
        self._check_evidence(order, target)
        now = now_utc()
        values: dict[str, Any] = {"status": target, "updated_at": now}
        if target == OrderStatus.DELIVERING:
            values["pickup_time"] = now
        elif target == OrderStatus.COMPLETED:
            values["delivery_time"] = now
        elif target == OrderStatus.CANCELLED:
            values["cancelled_at"] = now
        if extra:
            values.update(extra)

        db.flush()
        res = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Order status changed concurrently, reload and retry")
        db.refresh(order)

        if target == OrderStatus.DELIVERING and order.courier_id is not None:
            mark_busy(db, order.courier_id)
        elif target == OrderStatus.COMPLETED:
            self._complete(db, order)
        elif target == OrderStatus.CANCELLED:
            release_if_idle(db, order.courier_id)

        db.add(DeliveryHistory(order_id=order.id, from_status=current.value, status=target.value,
                               actor=actor, notes=notes))
        audit_trail.record(db, "ORDER_UPDATE", actor=actor, order_ref=order.order_number,
                           meta={"previous_status": current.value, "new_status": target.value, "notes": notes})
        ORDER_TRANSITIONS.labels(current.value, target.value).inc()
        logger.info("Order %s %s -> %s by %s", order.order_number, current.value, target.value, actor)

        after.add(f"notify:{target.value}", self.notifier.customer, order.user_id, "order_status",
                  "Order update", STATUS_MESSAGES.get(target, f"Order status: {target.value}"),
                  {"order_number": order.order_number, "status": target.value})
        if target in TERMINAL:
            after.add("tracking:close", hub.close, order.order_number)
        return current

    def _complete(self, db: Session, order: Order) -> None:
        if order.courier_id is not None:
            db.execute(
                update(Courier)
                .where(Courier.id == order.courier_id)
                .values(total_deliveries=Courier.total_deliveries + 1)
            )
            release_if_idle(db, order.courier_id)
        if award_points(db, order.user_id, order.id, "order_completed", self.settings.LOYALTY_POINTS_PER_ORDER):
            db.execute(
                update(User)
                .where(User.id == order.user_id)
                .values(total_successful_orders=User.total_successful_orders + 1)
            )
