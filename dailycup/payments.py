import logging
from typing import Optional

import httpx

from .config import Settings
from .errors import ExternalServiceError
from .models import Order

logger = logging.getLogger(__name__)


class InvoiceClient:
    """Creates hosted payment invoices; ``external_id`` is the order number the webhook echoes back."""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client

    def payload(self, order: Order) -> dict:
        base = self.settings.APP_URL.rstrip("/")
        return {
            "external_id": order.order_number,
            "amount": order.final_amount,
            "payer_email": order.customer_email,
            "description": f"DailyCup order {order.order_number}",
            "success_redirect_url": f"{base}/checkout/success?orderId={order.order_number}",
            "failure_redirect_url": f"{base}/checkout/failed?orderId={order.order_number}",
            "callback_url": f"{base}/webhooks/xendit",
        }

    def create_invoice(self, order: Order) -> str:
        if not self.settings.XENDIT_SECRET_KEY:
            raise ExternalServiceError("Payment provider not configured")
        try:
            if self.client is not None:
                r = self._post(self.client, order)
            else:
                with httpx.Client(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
                    r = self._post(client, order)
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Payment provider request failed", error=str(exc)) from exc
        if r.status_code >= 400:
            logger.warning("Invoice request for %s failed: %s %s", order.order_number, r.status_code, r.text[:200])
            raise ExternalServiceError("Payment provider rejected the invoice", status=r.status_code)
        try:
            url = r.json().get("invoice_url")
        except ValueError:
            url = None
        if not url:
            raise ExternalServiceError("Payment provider returned no invoice URL")
        return url

    def _post(self, client: httpx.Client, order: Order) -> httpx.Response:
        return client.post(
            self.settings.XENDIT_API_URL,
            json=self.payload(order),
            auth=(self.settings.XENDIT_SECRET_KEY, ""),
        )
