"""
Courier dispatch: assignment, GPS ping ingestion, ETA and tracking views.

A courier is ``busy`` while at least one order assigned to it is active
(confirmed/processing/ready/delivering) and goes back to ``available`` only
when that count reaches zero. Pings are appended, never overwritten; the
newest row per courier is its position.
"""
from datetime import timedelta
import logging
from typing import Any, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from .audit import audit_trail
from .auth import Principal
from .config import Settings
from .db import transaction
from .effects import AfterCommit, Defer, run_now
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .geo import eta_minutes, haversine_km
from .metrics import COURIER_PINGS
from .models import (
    ACTIVE_ORDER_STATUSES, Courier, CourierLocation, CourierStatus, DeliveryHistory, Order, OrderStatus,
)
from .schemas import CourierOut
from .storage import store_bytes
from .tracking import TrackingHub, hub as default_hub
from .utils import now_utc

logger = logging.getLogger(__name__)

ASSIGNABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.READY)

PROGRESS = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 20,
    OrderStatus.PROCESSING: 40,
    OrderStatus.READY: 60,
    OrderStatus.DELIVERING: 80,
    OrderStatus.COMPLETED: 100,
    OrderStatus.CANCELLED: 0,
}

PROCESSING_WARN_AFTER = timedelta(minutes=30)
DELIVERING_WARN_AFTER = timedelta(minutes=45)

PHOTO_TYPES = {"image/jpeg", "image/png", "image/webp"}
PHOTO_STAGES = {
    "departure": (OrderStatus.PROCESSING, OrderStatus.READY),
    "arrival": (OrderStatus.DELIVERING,),
}


def active_order_count(db: Session, courier_id: int) -> int:
    return db.scalar(
        select(func.count(Order.id)).where(
            Order.courier_id == courier_id, Order.status.in_(ACTIVE_ORDER_STATUSES)
        )
    ) or 0


def release_if_idle(db: Session, courier_id: int | None) -> bool:
    """Flip a busy courier back to available once no active order remains."""
    if courier_id is None:
        return False
    db.flush()
    if active_order_count(db, courier_id) > 0:
        return False
    res = db.execute(
        update(Courier)
        .where(Courier.id == courier_id, Courier.status == CourierStatus.BUSY)
        .values(status=CourierStatus.AVAILABLE)
    )
    return res.rowcount == 1


def mark_busy(db: Session, courier_id: int) -> None:
    db.execute(update(Courier).where(Courier.id == courier_id).values(status=CourierStatus.BUSY))


def latest_location(db: Session, courier_id: int) -> Optional[CourierLocation]:
    return db.scalars(
        select(CourierLocation)
        .where(CourierLocation.courier_id == courier_id)
        .order_by(CourierLocation.updated_at.desc(), CourierLocation.id.desc())
        .limit(1)
    ).first()


def position_event(order: Order, loc: CourierLocation, speed_kmh: float) -> dict[str, Any]:
    event: dict[str, Any] = {
        "order_number": order.order_number,
        "lat": loc.latitude,
        "lng": loc.longitude,
        "timestamp": loc.updated_at.isoformat(),
        "distance_km": None,
        "eta_minutes": None,
    }
    if order.delivery_lat is not None and order.delivery_lng is not None:
        km = haversine_km(loc.latitude, loc.longitude, order.delivery_lat, order.delivery_lng)
        event["distance_km"] = round(km, 3)
        event["eta_minutes"] = eta_minutes(km, speed_kmh)
    return event


class CourierDispatcher:
    def __init__(self, settings: Settings, hub: TrackingHub | None = None):
        self.settings = settings
        self.hub = hub or default_hub

    # Registry

    def create_courier(self, db: Session, *, name: str, phone: str | None, vehicle_type: str | None,
                       rating: float, actor: str) -> Courier:
        with transaction(db):
            courier = Courier(name=name, phone=phone, vehicle_type=vehicle_type, rating=rating,
                              status=CourierStatus.OFFLINE, is_active=True)
            db.add(courier)
            db.flush()
            audit_trail.record(db, "COURIER_CREATE", actor=actor, meta={"courier_id": courier.id, "name": name})
        return courier

    def list_couriers(self, db: Session, status: Optional[str] = None) -> list[Courier]:
        stmt = select(Courier).where(Courier.is_active.is_(True))
        if status:
            try:
                stmt = stmt.where(Courier.status == CourierStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown courier status: {status}")
        return list(db.scalars(stmt.order_by(Courier.id)))

    def _courier(self, db: Session, courier_id: int) -> Courier:
        courier = db.get(Courier, courier_id)
        if courier is None or not courier.is_active:
            raise NotFoundError("Courier not found")
        return courier

    def set_availability(self, db: Session, courier_id: int, status: str) -> Courier:
        with transaction(db):
            courier = self._courier(db, courier_id)
            active = active_order_count(db, courier_id)
            if status == CourierStatus.OFFLINE.value:
                if active:
                    raise ConflictError("Finish active deliveries before going offline", active_orders=active)
                courier.status = CourierStatus.OFFLINE
            elif status == CourierStatus.AVAILABLE.value:
                courier.status = CourierStatus.BUSY if active else CourierStatus.AVAILABLE
            else:
                raise ValidationError(f"Unknown availability: {status}")
            audit_trail.record(db, "COURIER_AVAILABILITY", actor=f"courier:{courier_id}",
                               meta={"status": courier.status.value})
        return courier

    # Assignment

    def _bind(self, db: Session, order: Order, courier: Courier, actor: str) -> None:
        now = now_utc()
        db.flush()
        res = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.courier_id.is_(None), Order.status.in_(ASSIGNABLE_STATUSES))
            .values(courier_id=courier.id, assigned_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Order is already assigned or can no longer be assigned")
        db.refresh(order)
        mark_busy(db, courier.id)
        db.add(DeliveryHistory(order_id=order.id, from_status=order.status.value, status=order.status.value,
                               actor=actor, notes=f"Assigned to courier {courier.name}"))
        audit_trail.record(db, "COURIER_ASSIGNED", actor=actor, order_ref=order.order_number,
                           meta={"courier_id": courier.id})
        logger.info("Order %s assigned to courier %s by %s", order.order_number, courier.id, actor)

    def assign(self, db: Session, order_number: str, courier_id: int | None, actor: str) -> Order:
        with transaction(db):
            order = db.scalar(select(Order).where(Order.order_number == order_number))
            if order is None:
                raise NotFoundError("Order not found")
            if courier_id is None:
                if self.auto_assign(db, order, actor) is None:
                    raise ConflictError("No courier available")
            else:
                courier = self._courier(db, courier_id)
                if courier.status == CourierStatus.OFFLINE:
                    raise ConflictError("Courier is offline")
                self._bind(db, order, courier, actor)
        return order

    def pick_courier(self, db: Session) -> Optional[Courier]:
        active = (
            select(func.count(Order.id))
            .where(Order.courier_id == Courier.id, Order.status.in_(ACTIVE_ORDER_STATUSES))
            .correlate(Courier)
            .scalar_subquery()
        )
        stmt = (
            select(Courier)
            .where(
                Courier.is_active.is_(True),
                Courier.status.in_([CourierStatus.AVAILABLE, CourierStatus.BUSY]),
                active < self.settings.COURIER_MAX_ACTIVE_ORDERS,
            )
            .order_by(
                case((Courier.status == CourierStatus.AVAILABLE, 0), else_=1),
                active.asc(),
                Courier.rating.desc(),
                Courier.id.asc(),
            )
            .limit(1)
        )
        return db.scalars(stmt).first()

    def auto_assign(self, db: Session, order: Order, actor: str) -> Optional[Courier]:
        """Bind the best free courier inside the caller's transaction; None when nobody qualifies."""
        if order.courier_id is not None:
            return None
        courier = self.pick_courier(db)
        if courier is None:
            logger.warning("No courier available for order %s", order.order_number)
            return None
        self._bind(db, order, courier, actor)
        return courier

    # Location

    def ingest_ping(self, db: Session, courier_id: int, *, latitude: float, longitude: float,
                    accuracy: float | None = None, speed: float | None = None,
                    defer: Defer = run_now) -> list[dict[str, Any]]:
        after = AfterCommit()
        with transaction(db):
            self._courier(db, courier_id)
            loc = CourierLocation(courier_id=courier_id, latitude=latitude, longitude=longitude,
                                  accuracy=accuracy, speed=speed, updated_at=now_utc())
            db.add(loc)
            db.flush()
            orders = db.scalars(
                select(Order).where(Order.courier_id == courier_id, Order.status.in_(ACTIVE_ORDER_STATUSES))
            ).all()
            events = [position_event(o, loc, self.settings.AVG_COURIER_SPEED_KMH) for o in orders]
        COURIER_PINGS.inc()
        for event in events:
            self.hub.publish(event["order_number"], event)
        return events

    # Views

    def _visible_order(self, db: Session, order_number: str, principal: Principal) -> Order:
        order = db.scalar(select(Order).where(Order.order_number == order_number))
        if order is None:
            raise NotFoundError("Order not found")
        if principal.is_admin:
            return order
        if principal.role == "courier" and order.courier_id == principal.courier_id:
            return order
        if principal.role == "customer" and order.user_id is not None and order.user_id == principal.user_id:
            return order
        raise ForbiddenError("Not allowed to view this order")

    def snapshot(self, db: Session, order_number: str, principal: Principal) -> dict[str, Any]:
        order = self._visible_order(db, order_number, principal)
        snap: dict[str, Any] = {
            "order_number": order.order_number,
            "status": order.status.value,
            "progress": PROGRESS.get(order.status, 0),
            "courier": None,
            "location": None,
            "destination": None,
            "distance_km": None,
            "eta_minutes": None,
            "warnings": self.delay_warnings(order),
        }
        if order.delivery_lat is not None and order.delivery_lng is not None:
            snap["destination"] = {"lat": order.delivery_lat, "lng": order.delivery_lng,
                                   "address": order.delivery_address}
        if order.courier_id is not None:
            courier = db.get(Courier, order.courier_id)
            if courier is not None:
                snap["courier"] = CourierOut.model_validate(courier).model_dump()
            loc = latest_location(db, order.courier_id)
            if loc is not None:
                event = position_event(order, loc, self.settings.AVG_COURIER_SPEED_KMH)
                snap["location"] = event
                snap["distance_km"] = event["distance_km"]
                snap["eta_minutes"] = event["eta_minutes"]
        return snap

    def delay_warnings(self, order: Order, now=None) -> list[str]:
        now = now or now_utc()
        warnings = []
        if order.status == OrderStatus.PROCESSING and order.assigned_at and now - order.assigned_at > PROCESSING_WARN_AFTER:
            warnings.append("Order has been processing for more than 30 minutes")
        if order.status == OrderStatus.DELIVERING and order.pickup_time and now - order.pickup_time > DELIVERING_WARN_AFTER:
            warnings.append("Delivery is taking longer than 45 minutes")
        return warnings

    def active_deliveries(self, db: Session) -> dict[str, Any]:
        orders = db.scalars(
            select(Order)
            .where(Order.courier_id.is_not(None), Order.status.in_(ACTIVE_ORDER_STATUSES))
            .order_by(Order.assigned_at.asc(), Order.id.asc())
        ).all()
        stats = {s.value: 0 for s in ACTIVE_ORDER_STATUSES}
        rows = []
        now = now_utc()
        for o in orders:
            stats[o.status.value] += 1
            rows.append({
                "order_number": o.order_number,
                "status": o.status.value,
                "courier_id": o.courier_id,
                "customer_name": o.customer_name,
                "delivery_address": o.delivery_address,
                "assigned_at": o.assigned_at,
                "pickup_time": o.pickup_time,
                "progress": PROGRESS.get(o.status, 0),
                "warnings": self.delay_warnings(o, now),
            })
        stats["total"] = len(rows)
        stats["delayed"] = sum(1 for r in rows if r["warnings"])
        return {"deliveries": rows, "stats": stats}

    # Evidence

    def upload_photo(self, db: Session, order_number: str, principal: Principal, *, kind: str,
                     content_type: str | None, data: bytes, filename: str) -> str:
        if kind not in PHOTO_STAGES:
            raise ValidationError("Photo type must be departure or arrival")
        if content_type not in PHOTO_TYPES:
            raise ValidationError("Only JPEG, PNG or WebP photos are accepted")
        if not data:
            raise ValidationError("Empty photo upload")
        if len(data) > self.settings.PHOTO_MAX_BYTES:
            raise ValidationError("Photo exceeds the maximum upload size", max_bytes=self.settings.PHOTO_MAX_BYTES)
        with transaction(db):
            order = self._visible_order(db, order_number, principal)
            if principal.role == "customer":
                raise ForbiddenError("Only the courier or an admin can upload delivery photos")
            if order.status not in PHOTO_STAGES[kind]:
                raise ConflictError(f"A {kind} photo cannot be uploaded while the order is {order.status.value}")
            url = store_bytes("delivery_photos", data, filename or f"{kind}.jpg", content_type, self.settings)
            if kind == "departure":
                order.departure_photo_url = url
            else:
                order.arrival_photo_url = url
            order.updated_at = now_utc()
            audit_trail.record(db, "DELIVERY_PHOTO", actor=principal.actor, order_ref=order.order_number,
                               meta={"type": kind, "url": url})
        return url
