import json

from sqlalchemy import select

from dailycup.auth import issue_token
from dailycup.config import Settings
from dailycup.models import Courier, CourierStatus, Order, OrderStatus, User
from dailycup.schemas import OrderCreate
from dailycup.webhooks import sign

WEBHOOK_SECRET = "whsec_test"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        DATABASE_URL=f"sqlite:///{tmp_path}/test.db",
        JWT_SECRET_KEY="test-secret",
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        WEBHOOK_CALLBACK_TOKEN=None,
        XENDIT_SECRET_KEY=None,
        REDIS_URL=None,
        LOCAL_FILES_DIR=str(tmp_path / "files"),
        GEOCODE_BACKOFF_SECONDS=0,
        GEOCODE_MIN_INTERVAL_SECONDS=0,
        RATE_LIMIT_ORDER="1000/60",
        RATE_LIMIT_WEBHOOK="1000/60",
        RATE_LIMIT_LOCATION="1000/60",
    )
    values.update(overrides)
    return Settings(**values)


def auth(settings, role, user_id=None, courier_id=None) -> dict:
    token = issue_token(settings, user_id=user_id, role=role, courier_id=courier_id)
    return {"Authorization": f"Bearer {token}"}


def make_user(db, name="Ana", email="ana@example.com") -> User:
    user = User(name=name, email=email, loyalty_points=0, total_successful_orders=0)
    db.add(user)
    db.commit()
    return user


def make_courier(db, name="Budi", status=CourierStatus.AVAILABLE, rating=4.5) -> Courier:
    courier = Courier(name=name, phone="0812000111", status=status, rating=rating, total_deliveries=0, is_active=True)
    db.add(courier)
    db.commit()
    return courier


def order_payload(**overrides) -> dict:
    payload = {
        "items": [{"id": 1, "name": "Caramel Latte", "price": 25000, "quantity": 2}],
        "total": 65000,
        "customer": {"name": "Ana", "email": "ana@example.com", "phone": "0812345678",
                     "address": "Jl. Sudirman No. 1, Jakarta"},
        "paymentMethod": "xendit",
        "deliveryMethod": "delivery",
        "discount": 0,
        "deliveryFee": 15000,
    }
    payload.update(overrides)
    return payload


def create_order(machine, db, principal=None, **overrides) -> Order:
    result = machine.create(db, OrderCreate(**order_payload(**overrides)), principal)
    return db.scalar(select(Order).where(Order.order_number == result["order_number"]))


def fresh(db, obj):
    db.expire_all()
    return db.get(type(obj), obj.id)


def force_status(db, order, status: OrderStatus):
    order.status = status
    db.commit()
    return order


def post_webhook(client, payload: dict, secret: str = WEBHOOK_SECRET, headers=None):
    body = json.dumps(payload).encode()
    h = {"Content-Type": "application/json", "X-Callback-Signature": sign(secret, body)}
    h.update(headers or {})
    return client.post("/webhooks/xendit", content=body, headers=h)
