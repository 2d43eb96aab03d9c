"""
Order workflow: turns a cart into a priced, persisted order and drives its
status lifecycle.

Stock is reserved with a conditional $inc per product (the filter requires
enough stock), so concurrent checkouts cannot oversell. Reservations are
released when a later step fails and when an order is cancelled.
"""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, oid, utcnow
from errors import ForbiddenError, NotFoundError, ValidationError
from pricing import FREE_SHIPPING_THRESHOLD, SHIPPING_FEE, TAX_RATE, price_order, unit_price
from schemas import Order, OrderItem, PaymentInfo, ShippingAddress

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"shipped", "cancelled"}),
    "shipped": frozenset({"delivered"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


class OrderWorkflow:
    def __init__(
        self,
        db,
        gateway,
        free_shipping_threshold=FREE_SHIPPING_THRESHOLD,
        shipping_fee=SHIPPING_FEE,
        tax_rate=TAX_RATE,
    ):
        self.db = db
        self.gateway = gateway
        self.free_shipping_threshold = free_shipping_threshold
        self.shipping_fee = shipping_fee
        self.tax_rate = tax_rate

    # ----------------------- Pricing -----------------------
    def price_order(self, line_items: Iterable[Mapping]) -> Dict[str, float]:
        return price_order(
            line_items,
            free_shipping_threshold=self.free_shipping_threshold,
            shipping_fee=self.shipping_fee,
            tax_rate=self.tax_rate,
        )

    # ----------------------- Placement -----------------------
    def place_order(
        self,
        buyer: Mapping,
        cart: Iterable[Mapping],
        shipping_address: Mapping,
        payment_method: str,
        payment_proof: Optional[Mapping] = None,
    ) -> dict:
        """Create an order for ``buyer``.

        ``cart`` is a list of ``{"product": <id>, "quantity": <n>}``. Online
        orders need a payment proof (razorpay_order_id, razorpay_payment_id,
        razorpay_signature) whose signature checks out; cash on delivery
        orders never touch the gateway.
        """
        quantities = self._merge_lines(cart)
        if payment_method == "online":
            payment_info = self._verified_payment(payment_proof)
            payment_status = "completed"
        elif payment_method == "cod":
            payment_info = None
            payment_status = "pending"
        else:
            raise ValidationError("Invalid payment method")

        try:
            order_items = self._snapshot_items(quantities)
            order = self._build_order(buyer, order_items, shipping_address, payment_method, payment_info, payment_status)
            reserved = self._reserve_stock(order["order_items"])
        except ValidationError:
            self._log_unreconciled(payment_info, "stock or catalog validation failed")
            raise
        except NotFoundError:
            self._log_unreconciled(payment_info, "a product is no longer available")
            raise

        try:
            order_id = create_document(self.db, "order", order)
        except DuplicateKeyError:
            self._release_stock(reserved)
            logger.warning("Rejected replayed payment proof for gateway order %s", payment_info["razorpay_order_id"])
            raise ValidationError("Payment has already been used for another order")
        except PyMongoError:
            self._release_stock(reserved)
            self._log_unreconciled(payment_info, "order insert failed")
            raise
        logger.info(
            "Order %s placed by %s: %s items, total %.2f (%s)",
            order_id, buyer["id"], len(order_items), order["total_price"], payment_method,
        )
        return self.db["order"].find_one({"_id": oid(order_id)})

    def _build_order(self, buyer, order_items, shipping_address, payment_method, payment_info, payment_status) -> dict:
        try:
            order = Order(
                user=buyer["id"],
                order_items=order_items,
                shipping_address=ShippingAddress(**shipping_address),
                payment_method=payment_method,
                payment_info=PaymentInfo(**payment_info) if payment_info else None,
                payment_status=payment_status,
                **self.price_order(item.model_dump() for item in order_items),
            )
        except SchemaError as exc:
            raise ValidationError(f"Invalid order: {exc.errors()[0]['msg']}")
        doc = order.model_dump()
        if doc["payment_info"] is None:
            # absent rather than null so the sparse unique index skips it
            del doc["payment_info"]
        return doc

    @staticmethod
    def _merge_lines(cart: Iterable[Mapping]) -> "OrderedDict[str, int]":
        quantities: "OrderedDict[str, int]" = OrderedDict()
        for line in cart:
            quantity = int(line.get("quantity", 0))
            if quantity < 1:
                raise ValidationError("Quantity must be at least 1")
            product_id = str(line["product"])
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        if not quantities:
            raise ValidationError("No order items")
        return quantities

    def _payment_used(self, gateway_order_id: str) -> bool:
        return self.db["order"].find_one({"payment_info.razorpay_order_id": gateway_order_id}) is not None

    def _verified_payment(self, proof: Optional[Mapping]) -> dict:
        if not proof:
            raise ValidationError("Payment information is required for online payment")
        order_id = proof.get("razorpay_order_id")
        payment_id = proof.get("razorpay_payment_id")
        signature = proof.get("razorpay_signature")
        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.warning("Rejected order with invalid payment signature (gateway order %s)", order_id)
            raise ValidationError("Invalid payment signature")
        if self._payment_used(order_id):
            logger.warning("Rejected replayed payment proof for gateway order %s", order_id)
            raise ValidationError("Payment has already been used for another order")
        return {
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        }

    def _snapshot_items(self, quantities: Mapping[str, int]) -> List[OrderItem]:
        items = []
        for product_id, quantity in quantities.items():
            product = self.db["product"].find_one({"_id": oid(product_id), "is_active": True})
            if not product:
                raise NotFoundError(f"Product {product_id} not found")
            images = product.get("images") or []
            items.append(OrderItem(
                product=product_id,
                name=product["name"],
                price=float(unit_price(product)),
                quantity=quantity,
                image=images[0] if images else None,
                seller=product["seller"],
            ))
        return items

    def _reserve_stock(self, order_items: List[dict]) -> List[dict]:
        reserved = []
        for item in order_items:
            result = self.db["product"].update_one(
                {"_id": oid(item["product"]), "stock": {"$gte": item["quantity"]}},
                {"$inc": {"stock": -item["quantity"]}},
            )
            if result.modified_count == 0:
                self._release_stock(reserved)
                logger.warning("Insufficient stock for product %s (wanted %s)", item["product"], item["quantity"])
                raise ValidationError(f"Insufficient stock for {item['name']}")
            reserved.append(item)
        return reserved

    def _release_stock(self, items: Iterable[Mapping]) -> None:
        for item in items:
            self.db["product"].update_one(
                {"_id": oid(item["product"])},
                {"$inc": {"stock": item["quantity"]}},
            )

    @staticmethod
    def _log_unreconciled(payment_info: Optional[Mapping], reason: str) -> None:
        if payment_info:
            logger.error(
                "Unreconciled payment %s (gateway order %s): %s",
                payment_info["razorpay_payment_id"], payment_info["razorpay_order_id"], reason,
            )

    # ----------------------- Status -----------------------
    @staticmethod
    def _is_participant(order: Mapping, actor: Mapping) -> bool:
        return any(item.get("seller") == actor["id"] for item in order.get("order_items", []))

    def update_order_status(self, order_id: str, new_status: str, actor: Mapping) -> dict:
        order = self.db["order"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if actor.get("role") != "admin" and not (
            actor.get("role") == "seller" and self._is_participant(order, actor)
        ):
            raise ForbiddenError("Not authorized to update this order")

        current = order["order_status"]
        if not can_transition(current, new_status):
            raise ValidationError(f"Cannot change order status from {current} to {new_status}")

        now = utcnow()
        changes = {"order_status": new_status, "updated_at": now}
        if new_status == "delivered":
            changes["delivered_at"] = now
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "order_status": current},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Order status was changed by another request")
        if new_status == "cancelled":
            self._release_stock(order["order_items"])
        logger.info("Order %s moved %s -> %s by %s", order_id, current, new_status, actor["id"])
        return updated

    # ----------------------- Payment state -----------------------
    def mark_refunded(self, payment_id: str) -> int:
        result = self.db["order"].update_many(
            {"payment_info.razorpay_payment_id": payment_id},
            {"$set": {"payment_status": "refunded", "updated_at": utcnow()}},
        )
        return result.modified_count

    # ----------------------- Queries -----------------------
    def get_order(self, order_id: str, actor: Mapping) -> dict:
        order = self.db["order"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if order["user"] == actor["id"] or actor.get("role") == "admin" or self._is_participant(order, actor):
            return order
        raise ForbiddenError("Not authorized to view this order")

    def list_orders_for_buyer(self, user_id: str) -> List[dict]:
        return list(self.db["order"].find({"user": user_id}).sort("created_at", -1))

    def list_orders_for_seller(self, seller_id: str) -> List[dict]:
        return list(self.db["order"].find({"order_items.seller": seller_id}).sort("created_at", -1))
