"""
Client for the hosted payment gateway (Razorpay REST API).

One PaymentGateway is built in create_app() and handed to the routes and the
order workflow; tests pass one backed by httpx.MockTransport.
"""
import hashlib
import hmac
import logging
import os
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from errors import GatewayError, ValidationError
from pricing import to_decimal

logger = logging.getLogger(__name__)

RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
DEFAULT_CURRENCY = "INR"


def to_minor_units(amount) -> int:
    """Major currency units to the gateway's integer minor units (rupees -> paise)."""
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def positive_amount(amount, label: str = "Amount") -> Decimal:
    value = None if amount is None else to_decimal(amount)
    if value is None or not value.is_finite() or value <= 0:
        raise ValidationError(f"{label} must be a finite number greater than zero")
    return value


def new_receipt() -> str:
    return f"receipt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def sign(secret: str, order_id: str, payment_id: str) -> str:
    body = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class PaymentGateway:
    def __init__(self, key_id: str, key_secret: str, http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.key_id = key_id
        self._key_secret = key_secret
        self._http = http or httpx.Client(
            base_url=RAZORPAY_API_URL,
            auth=(key_id, key_secret),
            timeout=timeout,
        )

    def _request(self, method: str, path: str, payload: dict) -> dict:
        try:
            response = self._http.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Payment gateway unreachable on %s %s: %s", method, path, exc)
            raise GatewayError(f"Payment gateway unreachable: {exc}") from exc
        if response.is_error:
            message = self._error_description(response)
            logger.error("Payment gateway rejected %s %s (%s): %s", method, path, response.status_code, message)
            raise GatewayError(message)
        return response.json()

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        return error.get("description") or f"Payment gateway error ({response.status_code})"

    def create_order(self, amount, currency: str = DEFAULT_CURRENCY) -> dict:
        positive_amount(amount)
        options = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": new_receipt(),
            "payment_capture": 1,
        }
        order = self._request("POST", "/orders", options)
        logger.info("Created gateway order %s for %s %s", order.get("id"), options["amount"], currency)
        return {
            "id": order["id"],
            "amount": order.get("amount", options["amount"]),
            "currency": order.get("currency", currency),
            "receipt": order.get("receipt", options["receipt"]),
        }

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature):
            return False
        expected = sign(self._key_secret, order_id, payment_id)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def refund(self, payment_id: str, amount=None) -> dict:
        payload = {}
        if amount is not None:
            positive_amount(amount, "Refund amount")
            payload["amount"] = to_minor_units(amount)
        refund = self._request("POST", f"/payments/{payment_id}/refund", payload)
        logger.info("Refund %s issued for payment %s", refund.get("id"), payment_id)
        return refund
