import httpx
import pytest
from sqlalchemy import func, select

from dailycup.auth import Principal
from dailycup.db import SessionLocal, transaction
from dailycup.effects import AfterCommit
from dailycup.errors import ConflictError, ValidationError
from dailycup.models import (
    AuditLog, CODStatus, CODStatusHistory, CODTracking, CourierStatus, DeliveryHistory, GeocodeJob, GeocodeStatus,
    LoyaltyTransaction, Order, OrderStatus,
)
from dailycup.orders import SUCCESSORS, OrderStateMachine
from dailycup.payments import InvoiceClient
from dailycup.schemas import OrderCreate
from tests.factories import (
    auth, create_order, force_status, fresh, make_courier, make_settings, make_user, order_payload,
)

ADMIN = Principal(user_id=1, role="admin")


def count(db, model, *where):
    return db.scalar(select(func.count()).select_from(model).where(*where))


class TestCreateOrder:
    def test_create_delivery_order(self, client, db):
        r = client.post("/orders", json=order_payload())
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["orderId"].startswith("ORD-")
        assert body["redirect"] == f"/checkout/payment?orderId={body['orderId']}&mock=true"
        assert "invoice_url" not in body

        order = db.scalar(select(Order).where(Order.order_number == body["orderId"]))
        assert order.status == OrderStatus.PENDING
        assert order.subtotal == 50000
        assert order.final_amount == 65000
        assert order.geocode_status == GeocodeStatus.PENDING
        assert [(i.product_name, i.quantity, i.subtotal) for i in order.items] == [("Caramel Latte", 2, 50000)]
        assert count(db, GeocodeJob, GeocodeJob.order_id == order.id) == 1
        assert count(db, DeliveryHistory, DeliveryHistory.order_id == order.id) == 1
        assert count(db, AuditLog, AuditLog.action == "ORDER_CREATE", AuditLog.order_ref == order.order_number) == 1

    def test_total_mismatch_is_rejected_and_audited(self, client, db):
        r = client.post("/orders", json=order_payload(total=80000))
        assert r.status_code == 400
        body = r.json()
        assert body["success"] is False
        assert body["message"] == "Order total mismatch"
        assert body["calculated"] == 65000
        assert body["claimed"] == 80000

        assert count(db, Order) == 0
        entry = db.scalar(select(AuditLog).where(AuditLog.action == "TOTAL_MISMATCH"))
        assert entry is not None
        assert entry.level == "security"
        assert entry.actor == "guest"

    def test_total_within_tolerance_stores_computed_amount(self, client, db):
        r = client.post("/orders", json=order_payload(total=65500))
        assert r.status_code == 200
        order = db.scalar(select(Order))
        assert order.final_amount == 65000

    def test_missing_email_is_rejected(self, client, db):
        payload = order_payload()
        payload["customer"]["email"] = ""
        r = client.post("/orders", json=payload)
        assert r.status_code == 400
        assert r.json()["message"] == "Customer name and email are required"
        assert count(db, Order) == 0

    def test_invalid_quantity_is_a_bad_request(self, client):
        payload = order_payload(items=[{"id": 1, "name": "Latte", "price": 25000, "quantity": 0}])
        r = client.post("/orders", json=payload)
        assert r.status_code == 400
        assert r.json()["message"] == "Invalid request"

    def test_delivery_requires_address(self, client):
        payload = order_payload()
        payload["customer"]["address"] = "  "
        r = client.post("/orders", json=payload)
        assert r.status_code == 400
        assert "address" in r.json()["message"]

    def test_coordinates_skip_geocoding(self, client, db):
        payload = order_payload()
        payload["customer"].update(lat=-6.2, lng=106.8)
        assert client.post("/orders", json=payload).status_code == 200
        order = db.scalar(select(Order))
        assert order.geocode_status == GeocodeStatus.OK
        assert (order.delivery_lat, order.delivery_lng) == (-6.2, 106.8)
        assert count(db, GeocodeJob) == 0

    def test_takeaway_needs_no_address(self, client, db):
        payload = order_payload(deliveryMethod="takeaway", deliveryFee=0, total=50000)
        payload["customer"]["address"] = None
        assert client.post("/orders", json=payload).status_code == 200
        assert count(db, GeocodeJob) == 0

    def test_cod_requires_login(self, client, db):
        r = client.post("/orders", json=order_payload(paymentMethod="cod"))
        assert r.status_code == 401
        assert count(db, Order) == 0

    def test_cod_order_opens_tracking(self, client, settings, db):
        user = make_user(db)
        r = client.post("/orders", json=order_payload(paymentMethod="cod"),
                        headers=auth(settings, "customer", user_id=user.id))
        assert r.status_code == 200
        number = r.json()["orderId"]
        assert r.json()["redirect"] == f"/orders/{number}"

        order = db.scalar(select(Order).where(Order.order_number == number))
        assert order.user_id == user.id
        tracking = db.scalar(select(CODTracking).where(CODTracking.order_id == order.id))
        assert tracking.status == CODStatus.PENDING
        assert count(db, CODStatusHistory, CODStatusHistory.order_id == order.id) == 1

    def test_cod_limit(self, client, settings, db):
        user = make_user(db)
        payload = order_payload(paymentMethod="cod", total=135000,
                                items=[{"id": 2, "name": "Cold Brew Jug", "price": 60000, "quantity": 2}])
        r = client.post("/orders", json=payload, headers=auth(settings, "customer", user_id=user.id))
        assert r.status_code == 400
        assert r.json()["max_amount"] == settings.COD_MAX_AMOUNT

    def test_invoice_url_from_provider(self, tmp_path, db):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = request.content
            return httpx.Response(200, json={"invoice_url": "https://checkout.example/inv_1"})

        s = make_settings(tmp_path, XENDIT_SECRET_KEY="xnd_test")
        invoices = InvoiceClient(s, client=httpx.Client(transport=httpx.MockTransport(handler)))
        result = OrderStateMachine(s, invoices=invoices).create(db, OrderCreate(**order_payload()))
        assert result["invoice_url"] == "https://checkout.example/inv_1"
        assert "redirect" not in result
        assert seen["auth"].startswith("Basic ")
        assert result["order_number"].encode() in seen["body"]


class TestTransitions:
    @pytest.mark.parametrize("current", list(OrderStatus))
    def test_disallowed_transitions_leave_order_untouched(self, machine, db, current):
        order = create_order(machine, db)
        force_status(db, order, current)
        for target in OrderStatus:
            if target in SUCCESSORS.get(current, ()):
                continue
            with pytest.raises(ConflictError):
                machine.transition(db, order.order_number, target.value, ADMIN)
            assert fresh(db, order).status == current

    def test_unknown_status(self, machine, db):
        order = create_order(machine, db)
        with pytest.raises(ValidationError):
            machine.transition(db, order.order_number, "teleported", ADMIN)

    def test_full_lifecycle(self, machine, dispatcher, db):
        user = make_user(db)
        courier = make_courier(db)
        order = create_order(machine, db, Principal(user_id=user.id, role="customer"))
        dispatcher.assign(db, order.order_number, courier.id, ADMIN.actor)
        assert fresh(db, courier).status == CourierStatus.BUSY

        for status in ("confirmed", "processing", "ready", "delivering"):
            machine.transition(db, order.order_number, status, ADMIN)
        order = fresh(db, order)
        assert order.pickup_time is not None
        assert order.delivery_time is None

        machine.transition(db, order.order_number, "completed", ADMIN)
        order = fresh(db, order)
        assert order.status == OrderStatus.COMPLETED
        assert order.delivery_time is not None

        courier = fresh(db, courier)
        assert courier.status == CourierStatus.AVAILABLE
        assert courier.total_deliveries == 1

        user = fresh(db, user)
        assert user.loyalty_points == 2
        assert user.total_successful_orders == 1
        assert count(db, LoyaltyTransaction, LoyaltyTransaction.reason == "order_completed") == 1
        # created + assigned + five moves
        assert count(db, DeliveryHistory, DeliveryHistory.order_id == order.id) == 7
        assert count(db, AuditLog, AuditLog.action == "ORDER_UPDATE", AuditLog.order_ref == order.order_number) == 5

    def test_courier_stays_busy_until_last_active_order(self, machine, dispatcher, db):
        courier = make_courier(db)
        first = create_order(machine, db)
        second = create_order(machine, db)
        for o in (first, second):
            dispatcher.assign(db, o.order_number, courier.id, ADMIN.actor)
            force_status(db, fresh(db, o), OrderStatus.DELIVERING)

        machine.transition(db, first.order_number, "completed", ADMIN)
        assert fresh(db, courier).status == CourierStatus.BUSY
        machine.transition(db, second.order_number, "completed", ADMIN)
        assert fresh(db, courier).status == CourierStatus.AVAILABLE

    def test_cancel_releases_courier(self, machine, dispatcher, db):
        courier = make_courier(db)
        order = create_order(machine, db)
        dispatcher.assign(db, order.order_number, courier.id, ADMIN.actor)
        machine.transition(db, order.order_number, "cancelled", ADMIN, notes="Customer called")
        order = fresh(db, order)
        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert fresh(db, courier).status == CourierStatus.AVAILABLE

    def test_stale_writer_gets_conflict(self, machine, db):
        order = create_order(machine, db)
        other = SessionLocal()
        try:
            machine.transition(other, order.order_number, "confirmed", ADMIN)
        finally:
            other.close()

        assert order.status == OrderStatus.PENDING
        with pytest.raises(ConflictError):
            with transaction(db):
                machine.apply(db, order, OrderStatus.CANCELLED, actor=ADMIN.actor, after=AfterCommit())
        assert fresh(db, order).status == OrderStatus.CONFIRMED

    def test_photo_evidence_when_required(self, tmp_path, db):
        machine = OrderStateMachine(make_settings(tmp_path, DELIVERY_PHOTO_REQUIRED=True))
        order = create_order(machine, db)
        force_status(db, order, OrderStatus.READY)
        with pytest.raises(ValidationError):
            machine.transition(db, order.order_number, "delivering", ADMIN)

        order = fresh(db, order)
        order.departure_photo_url = "/files/delivery_photos/departure.jpg"
        db.commit()
        machine.transition(db, order.order_number, "delivering", ADMIN)
        with pytest.raises(ValidationError):
            machine.transition(db, order.order_number, "completed", ADMIN)
        assert fresh(db, order).status == OrderStatus.DELIVERING


class TestPermissions:
    def _order(self, machine, db, user=None, courier=None, status=None):
        principal = Principal(user_id=user.id, role="customer") if user else None
        order = create_order(machine, db, principal)
        if courier is not None:
            order.courier_id = courier.id
        if status is not None:
            order.status = status
        db.commit()
        return order

    def test_requires_token(self, client, machine, db):
        order = self._order(machine, db)
        r = client.post(f"/orders/{order.order_number}/status", json={"status": "confirmed"})
        assert r.status_code == 401

    def test_bad_token(self, client, machine, db):
        order = self._order(machine, db)
        r = client.post(f"/orders/{order.order_number}/status", json={"status": "confirmed"},
                        headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    def test_customer_cancels_own_pending_order(self, client, settings, machine, db):
        user = make_user(db)
        order = self._order(machine, db, user=user)
        r = client.post(f"/orders/{order.order_number}/status", json={"status": "cancelled"},
                        headers=auth(settings, "customer", user_id=user.id))
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"

    def test_customer_cannot_touch_other_orders(self, client, settings, machine, db):
        owner = make_user(db)
        stranger = make_user(db, name="Bob", email="bob@example.com")
        order = self._order(machine, db, user=owner)
        headers = auth(settings, "customer", user_id=stranger.id)
        assert client.post(f"/orders/{order.order_number}/status", json={"status": "cancelled"},
                           headers=headers).status_code == 403
        assert client.get(f"/orders/{order.order_number}", headers=headers).status_code == 403

    def test_customer_cannot_confirm(self, client, settings, machine, db):
        user = make_user(db)
        order = self._order(machine, db, user=user)
        r = client.post(f"/orders/{order.order_number}/status", json={"status": "confirmed"},
                        headers=auth(settings, "customer", user_id=user.id))
        assert r.status_code == 403
        assert fresh(db, order).status == OrderStatus.PENDING

    def test_courier_moves_only_assigned_orders(self, client, settings, machine, db):
        mine = make_courier(db)
        other = make_courier(db, name="Citra")
        order = self._order(machine, db, courier=mine, status=OrderStatus.CONFIRMED)

        r = client.post(f"/orders/{order.order_number}/status", json={"status": "processing"},
                        headers=auth(settings, "courier", courier_id=other.id))
        assert r.status_code == 403

        r = client.post(f"/orders/{order.order_number}/status", json={"status": "processing"},
                        headers=auth(settings, "courier", courier_id=mine.id))
        assert r.status_code == 200
        assert r.json()["status"] == "processing"

    def test_courier_cannot_confirm(self, client, settings, machine, db):
        courier = make_courier(db)
        order = self._order(machine, db, courier=courier)
        r = client.post(f"/orders/{order.order_number}/status", json={"status": "confirmed"},
                        headers=auth(settings, "courier", courier_id=courier.id))
        assert r.status_code == 403

    def test_invalid_transition_over_http(self, client, admin_headers, machine, db):
        order = self._order(machine, db)
        r = client.post(f"/orders/{order.order_number}/status", json={"status": "completed"},
                        headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["current"] == "pending"
        assert r.json()["requested"] == "completed"

    def test_read_order(self, client, settings, admin_headers, machine, db):
        user = make_user(db)
        order = self._order(machine, db, user=user)
        r = client.get(f"/orders/{order.order_number}", headers=auth(settings, "customer", user_id=user.id))
        assert r.status_code == 200
        assert r.json()["items"][0]["product_name"] == "Caramel Latte"
        assert client.get(f"/orders/{order.order_number}", headers=admin_headers).status_code == 200
        assert client.get("/orders/ORD-0-0000", headers=admin_headers).status_code == 404
