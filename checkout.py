"""
Client-side checkout flow.

Drives the marketplace API the way the storefront does: price the cart,
branch on payment method, hand online payments to the provider's widget and
forward the widget's proof to the backend. `http` is an httpx.Client whose
base URL points at the API and whose headers already carry the bearer token.

The widget is any object with ``is_loaded()`` and ``open(options)``;
``open`` returns the provider's success payload (razorpay_order_id,
razorpay_payment_id, razorpay_signature) or raises PaymentCancelled when the
user dismisses the modal.
"""
import logging
from typing import Callable, List, Mapping, Optional

import httpx

from pricing import price_order

logger = logging.getLogger(__name__)

STORE_NAME = "ShopHub"
SUPPORT_MESSAGE = "Order creation failed after payment. Please contact support."


class CheckoutError(Exception):
    pass


class PaymentCancelled(CheckoutError):
    def __init__(self, message: str = "Payment cancelled by user"):
        super().__init__(message)


class UnreconciledPaymentError(CheckoutError):
    """The provider captured a payment but the backend has no order for it."""

    def __init__(self, payment_id: str, message: str = SUPPORT_MESSAGE):
        super().__init__(message)
        self.payment_id = payment_id


def _log_notify(level: str, message: str) -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


def _server_message(exc: httpx.HTTPError, fallback: str) -> str:
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            return response.json().get("message") or fallback
        except ValueError:
            pass
    return fallback


class Cart:
    def __init__(self):
        self.items: List[dict] = []

    def add(self, product: Mapping, quantity: int = 1) -> None:
        for item in self.items:
            if item["product"]["id"] == product["id"]:
                item["quantity"] += quantity
                return
        self.items.append({"product": dict(product), "quantity": quantity})

    def clear(self) -> None:
        self.items = []

    def __len__(self):
        return len(self.items)

    def pricing(self) -> dict:
        return price_order(
            {"price": i["product"]["price"], "discount_price": i["product"].get("discount_price"), "quantity": i["quantity"]}
            for i in self.items
        )

    def order_lines(self) -> List[dict]:
        return [{"product": i["product"]["id"], "quantity": i["quantity"]} for i in self.items]


class CheckoutFlow:
    def __init__(self, http: httpx.Client, widget=None, notify: Optional[Callable[[str, str], None]] = None):
        self.http = http
        self.widget = widget
        self.notify = notify or _log_notify

    def _post(self, path: str, payload: dict) -> dict:
        response = self.http.post(path, json=payload)
        response.raise_for_status()
        return response.json()

    def submit(self, cart: Cart, shipping_address: Mapping, payment_method: str = "online", customer: Optional[Mapping] = None) -> dict:
        if not len(cart):
            raise CheckoutError("Your cart is empty")
        order_data = {
            "order_items": cart.order_lines(),
            "shipping_address": dict(shipping_address),
            "payment_method": payment_method,
        }
        if payment_method == "cod":
            try:
                order = self._post("/api/orders", order_data)
            except httpx.HTTPError as exc:
                message = _server_message(exc, "Failed to process order")
                self.notify("error", message)
                raise CheckoutError(message) from exc
            self.notify("success", "Order placed successfully!")
            cart.clear()
            return order
        if payment_method != "online":
            raise CheckoutError(f"Unsupported payment method: {payment_method}")
        return self._pay_online(cart, order_data, shipping_address, customer or {})

    def _pay_online(self, cart: Cart, order_data: dict, shipping_address: Mapping, customer: Mapping) -> dict:
        if self.widget is None or not self.widget.is_loaded():
            message = "Payment gateway not loaded. Please refresh the page."
            self.notify("error", message)
            raise CheckoutError(message)

        total = cart.pricing()["total_price"]
        try:
            created = self._post("/api/payment/create-order", {"amount": total, "currency": "INR"})
            if not created.get("success"):
                raise CheckoutError("Failed to create payment order")
            remote_order = created["order"]
            proof = self.widget.open({
                "key": created["key"],
                "amount": remote_order["amount"],
                "currency": remote_order["currency"],
                "name": STORE_NAME,
                "description": f"Purchase from {STORE_NAME}",
                "order_id": remote_order["id"],
                "prefill": {
                    "name": customer.get("name", ""),
                    "email": customer.get("email", ""),
                    "contact": shipping_address.get("phone", ""),
                },
                "notes": {"address": f"{shipping_address.get('street', '')}, {shipping_address.get('city', '')}"},
            })
            payment_info = {
                "razorpay_order_id": proof["razorpay_order_id"],
                "razorpay_payment_id": proof["razorpay_payment_id"],
                "razorpay_signature": proof["razorpay_signature"],
            }
            verified = self._post("/api/payment/verify", payment_info)
            if not verified.get("success"):
                raise CheckoutError("Payment verification failed")
        except CheckoutError as exc:
            self.notify("error", str(exc))
            raise
        except httpx.HTTPError as exc:
            message = _server_message(exc, "Payment failed. Please try again.")
            self.notify("error", message)
            raise CheckoutError(message) from exc

        try:
            order = self._post("/api/orders", {**order_data, "payment_info": payment_info})
        except httpx.HTTPError as exc:
            logger.error("Order creation failed after payment %s: %s", payment_info["razorpay_payment_id"], exc)
            self.notify("error", SUPPORT_MESSAGE)
            raise UnreconciledPaymentError(payment_info["razorpay_payment_id"]) from exc
        self.notify("success", "Payment successful! Order placed.")
        cart.clear()
        return order
