from fastapi import APIRouter, Response
from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter(prefix="/metrics")

ORDERS_CREATED = Counter("dailycup_orders_created_total", "Orders created", ["payment_method"])
ORDER_REJECTED = Counter("dailycup_order_rejected_total", "Order creations rejected", ["reason"])
ORDER_TRANSITIONS = Counter("dailycup_order_transitions_total", "Applied order status transitions", ["from_status", "to_status"])
WEBHOOK_OUTCOMES = Counter("dailycup_webhook_outcomes_total", "Payment webhook outcomes", ["outcome"])
COD_ACTIONS = Counter("dailycup_cod_actions_total", "COD tracking actions applied", ["action"])
GEOCODE_OUTCOMES = Counter("dailycup_geocode_outcomes_total", "Geocode job outcomes", ["outcome"])
COURIER_PINGS = Counter("dailycup_courier_pings_total", "Courier location pings ingested")
TRACKING_SUBSCRIBERS = Gauge("dailycup_tracking_subscribers", "Open live-tracking subscriptions")


@router.get("")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
