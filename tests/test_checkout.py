import pytest

from checkout import SUPPORT_MESSAGE, Cart, CheckoutError, CheckoutFlow, PaymentCancelled, UnreconciledPaymentError
from conftest import auth, signature_for


class FakeWidget:
    def __init__(self, loaded=True, dismiss=False, tamper=False):
        self.loaded = loaded
        self.dismiss = dismiss
        self.tamper = tamper
        self.options = None

    def is_loaded(self):
        return self.loaded

    def open(self, options):
        self.options = options
        if self.dismiss:
            raise PaymentCancelled()
        payment_id = "pay_widget"
        signature = signature_for(options["order_id"], payment_id)
        if self.tamper:
            signature = signature[::-1]
        return {
            "razorpay_order_id": options["order_id"],
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        }


class Notifications:
    def __init__(self):
        self.messages = []

    def __call__(self, level, message):
        self.messages.append((level, message))


@pytest.fixture
def http(client, buyer):
    client.headers.update(auth(buyer))
    return client


@pytest.fixture
def notes():
    return Notifications()


@pytest.fixture
def cart(client, seller_a, make_product):
    product_id = make_product(seller_a, price=600, stock=3)
    cart = Cart()
    cart.add(client.get(f"/api/products/{product_id}").json())
    return cart


def test_cart_pricing_and_merge(cart):
    cart.add(dict(cart.items[0]["product"]), 1)
    assert len(cart) == 1
    assert cart.items[0]["quantity"] == 2
    assert cart.pricing()["total_price"] == 1416.0


def test_cod_checkout(http, db, cart, address, notes):
    order = CheckoutFlow(http, notify=notes).submit(cart, address, "cod")
    assert order["payment_method"] == "cod"
    assert order["total_price"] == 708.0
    assert len(cart) == 0
    assert notes.messages == [("success", "Order placed successfully!")]
    assert db["order"].count_documents({}) == 1


def test_cod_failure_surfaces_server_message(http, cart, address, notes):
    cart.items[0]["quantity"] = 10
    with pytest.raises(CheckoutError, match="Insufficient stock"):
        CheckoutFlow(http, notify=notes).submit(cart, address, "cod")
    assert len(cart) == 1
    assert notes.messages[0][0] == "error"


def test_online_checkout(http, db, cart, address, notes, gateway_stub):
    widget = FakeWidget()
    order = CheckoutFlow(http, widget=widget, notify=notes).submit(
        cart, address, "online", customer={"name": "Buyer", "email": "buyer@example.com"}
    )
    assert widget.options["amount"] == 70800
    assert widget.options["prefill"]["contact"] == address["phone"]
    assert order["payment_status"] == "completed"
    assert order["payment_info"]["razorpay_payment_id"] == "pay_widget"
    assert len(cart) == 0
    assert notes.messages[-1] == ("success", "Payment successful! Order placed.")
    assert len(gateway_stub.requests) == 1


@pytest.mark.parametrize("widget", [None, FakeWidget(loaded=False)])
def test_widget_not_loaded_aborts_before_payment(http, cart, address, notes, gateway_stub, widget):
    with pytest.raises(CheckoutError, match="Payment gateway not loaded"):
        CheckoutFlow(http, widget=widget, notify=notes).submit(cart, address, "online")
    assert gateway_stub.requests == []
    assert len(cart) == 1


def test_dismissed_modal_keeps_cart(http, db, cart, address, notes):
    with pytest.raises(PaymentCancelled):
        CheckoutFlow(http, widget=FakeWidget(dismiss=True), notify=notes).submit(cart, address, "online")
    assert len(cart) == 1
    assert notes.messages == [("error", "Payment cancelled by user")]
    assert db["order"].count_documents({}) == 0


def test_failed_verification_creates_nothing(http, db, cart, address, notes):
    with pytest.raises(CheckoutError, match="Invalid payment signature"):
        CheckoutFlow(http, widget=FakeWidget(tamper=True), notify=notes).submit(cart, address, "online")
    assert len(cart) == 1
    assert db["order"].count_documents({}) == 0


def test_order_failure_after_payment_asks_for_support(http, db, cart, address, notes):
    cart.items[0]["quantity"] = 10
    with pytest.raises(UnreconciledPaymentError) as excinfo:
        CheckoutFlow(http, widget=FakeWidget(), notify=notes).submit(cart, address, "online")
    assert excinfo.value.payment_id == "pay_widget"
    assert notes.messages[-1] == ("error", SUPPORT_MESSAGE)
    assert len(cart) == 1
    assert db["order"].count_documents({}) == 0


def test_empty_cart(http, address):
    with pytest.raises(CheckoutError):
        CheckoutFlow(http).submit(Cart(), address, "cod")
