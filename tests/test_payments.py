import hashlib
import hmac

import httpx
import pytest

from conftest import KEY_SECRET, signature_for
from errors import GatewayError, ValidationError
from payments import PaymentGateway, to_minor_units


def test_minor_units_round_to_nearest():
    assert to_minor_units(708) == 70800
    assert to_minor_units(19.99) == 1999
    assert to_minor_units(0.005) == 1
    assert to_minor_units(10.004) == 1000


def test_create_order_sends_minor_units(gateway, gateway_stub):
    order = gateway.create_order(708.0)
    path, body = gateway_stub.requests[0]
    assert path == "/v1/orders"
    assert body["amount"] == 70800
    assert body["currency"] == "INR"
    assert body["payment_capture"] == 1
    assert body["receipt"].startswith("receipt_")
    assert order == {"id": "order_1", "amount": 70800, "currency": "INR", "receipt": body["receipt"]}


def test_receipts_differ_between_calls(gateway, gateway_stub):
    gateway.create_order(10)
    gateway.create_order(10)
    receipts = [body["receipt"] for _, body in gateway_stub.requests]
    assert receipts[0] != receipts[1]


@pytest.mark.parametrize("amount", [0, -5, None, float("nan"), float("inf"), float("-inf")])
def test_create_order_rejects_non_positive_amount(gateway, gateway_stub, amount):
    with pytest.raises(ValidationError):
        gateway.create_order(amount)
    assert gateway_stub.requests == []


def test_gateway_rejection_raises_gateway_error(gateway, gateway_stub):
    gateway_stub.fail_with = (400, "Order amount less than minimum amount allowed")
    with pytest.raises(GatewayError) as excinfo:
        gateway.create_order(0.5)
    assert "minimum amount" in excinfo.value.message


def test_transport_failure_raises_gateway_error():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.Client(base_url="https://api.razorpay.test/v1", transport=httpx.MockTransport(boom))
    gateway = PaymentGateway("key", "secret", http=http)
    with pytest.raises(GatewayError):
        gateway.create_order(100)


def test_verify_signature_accepts_matching_hmac(gateway):
    expected = hmac.new(KEY_SECRET.encode(), b"order_abc|pay_xyz", hashlib.sha256).hexdigest()
    assert gateway.verify_signature("order_abc", "pay_xyz", expected)


def _mutate(value, index):
    replacement = "0" if value[index] != "0" else "1"
    return value[:index] + replacement + value[index + 1:]


def test_verify_signature_rejects_single_character_mutations(gateway):
    order_id, payment_id = "order_abc123", "pay_xyz789"
    signature = signature_for(order_id, payment_id)
    for i in range(len(signature)):
        assert not gateway.verify_signature(order_id, payment_id, _mutate(signature, i))
    for i in range(len(order_id)):
        assert not gateway.verify_signature(_mutate(order_id, i), payment_id, signature)
    for i in range(len(payment_id)):
        assert not gateway.verify_signature(order_id, _mutate(payment_id, i), signature)


def test_verify_signature_rejects_missing_parts(gateway):
    assert not gateway.verify_signature("", "pay_1", signature_for("", "pay_1"))
    assert not gateway.verify_signature("order_1", "pay_1", "")
    assert not gateway.verify_signature("order_1", None, "abc")


def test_full_refund_sends_no_amount(gateway, gateway_stub):
    refund = gateway.refund("pay_123")
    path, body = gateway_stub.requests[0]
    assert path == "/v1/payments/pay_123/refund"
    assert body == {}
    assert refund["payment_id"] == "pay_123"


def test_partial_refund_in_minor_units(gateway, gateway_stub):
    gateway.refund("pay_123", 99.5)
    assert gateway_stub.requests[0][1] == {"amount": 9950}


def test_refund_rejected_by_gateway(gateway, gateway_stub):
    gateway_stub.fail_with = (400, "The payment has been fully refunded already")
    with pytest.raises(GatewayError) as excinfo:
        gateway.refund("pay_123")
    assert "fully refunded" in excinfo.value.message


@pytest.mark.parametrize("amount", [0, -1, float("nan"), float("inf")])
def test_refund_rejects_invalid_amount(gateway, gateway_stub, amount):
    with pytest.raises(ValidationError):
        gateway.refund("pay_123", amount)
    assert gateway_stub.requests == []
