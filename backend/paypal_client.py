"""Thin PayPal REST (Orders v2 / Payments v2) client built on requests."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"
BRAND_NAME = "Prestige Designs"
CURRENCY_CODE = "USD"


class PayPalError(Exception):
    def __init__(self, message: str, status_code: int = 502, details=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def _money(value) -> Dict[str, str]:
    return {"currency_code": CURRENCY_CODE, "value": f"{float(value or 0):.2f}"}


class PayPalClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        environment: str = "sandbox",
        webhook_id: str = "",
        timeout: int = 20,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.environment = (environment or "sandbox").lower()
        self.webhook_id = webhook_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token_cache = {"access_token": None, "expires_at": None}

    @classmethod
    def from_config(cls, config) -> "PayPalClient":
        return cls(
            client_id=config.get("PAYPAL_CLIENT_ID", ""),
            client_secret=config.get("PAYPAL_CLIENT_SECRET", ""),
            environment=config.get("PAYPAL_ENV", "sandbox"),
            webhook_id=config.get("PAYPAL_WEBHOOK_ID", ""),
            timeout=config.get("PAYPAL_TIMEOUT_SECONDS", 20),
        )

    @property
    def base_url(self) -> str:
        if self.environment in ("live", "production"):
            return LIVE_BASE_URL
        return SANDBOX_BASE_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def get_access_token(self) -> str:
        if not self.is_configured:
            raise PayPalError("PayPal configuration is incomplete.", 500)

        now = datetime.utcnow()
        if (
            self._token_cache["access_token"]
            and self._token_cache["expires_at"]
            and self._token_cache["expires_at"] > now + timedelta(seconds=30)
        ):
            return self._token_cache["access_token"]

        try:
            response = self.session.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("PayPal auth error: %s", exc)
            raise PayPalError("Failed to authenticate with PayPal.") from exc

        self._token_cache["access_token"] = data.get("access_token")
        self._token_cache["expires_at"] = now + timedelta(
            seconds=int(data.get("expires_in", 3600))
        )
        return self._token_cache["access_token"]

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict:
        request_headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }
        request_headers.update(headers or {})
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("PayPal request %s %s failed: %s", method, path, exc)
            raise PayPalError("Unable to reach PayPal.") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"raw": response.text}

        if response.status_code >= 400:
            message = data.get("message") or data.get("error_description") or "PayPal request failed."
            logger.warning(
                "PayPal %s %s returned %s: %s", method, path, response.status_code, message
            )
            raise PayPalError(message, response.status_code, data)
        return data

    def build_purchase_unit(self, order_document: Dict) -> Dict:
        items: List[Dict] = []
        item_total = 0.0
        for item in order_document.get("items") or []:
            quantity = int(item.get("quantity") or 1)
            unit_amount = float(item.get("unit_price") or 0)
            item_total += unit_amount * quantity
            items.append(
                {
                    "name": (item.get("product_name") or "Design")[:127],
                    "sku": str(item.get("product_id") or "")[:127],
                    "quantity": str(quantity),
                    "unit_amount": _money(unit_amount),
                    "category": "DIGITAL_GOODS",
                }
            )

        item_total = round(item_total, 2)
        discount = round(float(order_document.get("total_promo_discount") or 0), 2)
        total = round(max(0.0, item_total - discount), 2)
        breakdown: Dict[str, Dict[str, str]] = {"item_total": _money(item_total)}
        if discount > 0:
            breakdown["discount"] = _money(discount)

        order_id = str(order_document["_id"])
        return {
            "reference_id": order_id,
            "custom_id": order_id,
            "invoice_id": order_document.get("order_number"),
            "description": f"{BRAND_NAME} order {order_document.get('order_number')}",
            "amount": {**_money(total), "breakdown": breakdown},
            "items": items,
        }

    def create_order(self, order_document: Dict, return_url: str, cancel_url: str) -> Dict:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [self.build_purchase_unit(order_document)],
            "application_context": {
                "brand_name": BRAND_NAME,
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        data = self._request("POST", "/v2/checkout/orders", payload)
        approval_url = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return {"id": data.get("id"), "status": data.get("status"), "approvalUrl": approval_url}

    def capture_order(self, paypal_order_id: str) -> Dict:
        data = self._request("POST", f"/v2/checkout/orders/{paypal_order_id}/capture", {})
        capture = {}
        for unit in data.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                capture = captures[0]
                break
        payer = data.get("payer") or {}
        return {
            "id": data.get("id"),
            "status": data.get("status"),
            "captureId": capture.get("id"),
            "captureStatus": capture.get("status"),
            "amount": (capture.get("amount") or {}).get("value"),
            "payer": {
                "payerId": payer.get("payer_id"),
                "email": payer.get("email_address"),
                "name": " ".join(
                    part
                    for part in (
                        (payer.get("name") or {}).get("given_name"),
                        (payer.get("name") or {}).get("surname"),
                    )
                    if part
                ),
                "address": payer.get("address") or {},
            },
        }

    def refund_capture(
        self,
        capture_id: str,
        amount: Optional[float] = None,
        note: str = "",
        request_id: Optional[str] = None,
    ) -> Dict[str, object]:
        """Refund a capture. Retries with the same request_id are not refunded twice."""
        payload: Dict[str, object] = {
            "note_to_payer": (note or "Refund for cancelled order")[:255]
        }
        if amount is not None:
            payload["amount"] = _money(amount)
        try:
            data = self._request(
                "POST",
                f"/v2/payments/captures/{capture_id}/refund",
                payload,
                headers={"PayPal-Request-Id": request_id or f"refund-{capture_id}"},
            )
        except PayPalError as exc:
            return {"success": False, "refundId": None, "status": None, "error": exc.message}
        return {
            "success": data.get("status") in ("COMPLETED", "PENDING"),
            "refundId": data.get("id"),
            "status": data.get("status"),
            "error": None,
        }

    def verify_webhook_signature(self, headers, event: Dict) -> bool:
        if not self.webhook_id:
            return True
        payload = {
            "auth_algo": headers.get("PAYPAL-AUTH-ALGO"),
            "cert_url": headers.get("PAYPAL-CERT-URL"),
            "transmission_id": headers.get("PAYPAL-TRANSMISSION-ID"),
            "transmission_sig": headers.get("PAYPAL-TRANSMISSION-SIG"),
            "transmission_time": headers.get("PAYPAL-TRANSMISSION-TIME"),
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        try:
            data = self._request("POST", "/v1/notifications/verify-webhook-signature", payload)
        except PayPalError as exc:
            logger.warning("PayPal webhook verification failed: %s", exc.message)
            return False
        return data.get("verification_status") == "SUCCESS"
