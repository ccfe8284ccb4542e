import json
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from paygate import signatures
from paygate.errors import GatewayTimeout, GatewayUnavailable, UnsupportedPaymentMethod
from paygate.gateways import GatewayRegistry, GatewayRequest, MomoAdapter, PaymentMethod


def _request(**overrides):
    fields = dict(
        payment_id="K1",
        order_id="O1",
        amount=Decimal("100000"),
        currency="VND",
        return_url="http://orders.test/thank-you?order_id=O1",
        notify_url="http://pay.test/api/payments/webhooks/momo",
        customer_data={"name": "An"},
    )
    fields.update(overrides)
    return GatewayRequest(**fields)


def _registry(settings, handler):
    return GatewayRegistry.from_settings(settings, httpx.Client(transport=httpx.MockTransport(handler)))


def test_payment_method_aliases():
    assert PaymentMethod("bank-transfer") is PaymentMethod.SEPAY
    assert PaymentMethod("wallet") is PaymentMethod.MOMO
    assert PaymentMethod("PayPal") is PaymentMethod.PAYPAL
    with pytest.raises(ValueError):
        PaymentMethod("stripe")


def test_registry_rejects_unknown_method(services):
    with pytest.raises(UnsupportedPaymentMethod):
        services.gateways.get("crypto")
    assert services.gateways.is_supported("wallet")
    assert not services.gateways.is_supported(None)


def test_sepay_create_builds_qr_and_confirm_urls(services):
    result = services.gateways.get("sepay").create(_request())

    qr = urlparse(result.qr_code_url)
    assert qr.netloc == "qr.sepay.vn"
    assert parse_qs(qr.query) == {
        "acc": ["0123456789"],
        "bank": ["MBBank"],
        "amount": ["100000"],
        "des": ["DHO1"],
        "template": ["compact"],
    }
    confirm = urlparse(result.payment_url)
    assert confirm.path == "/sepay/confirm"
    assert parse_qs(confirm.query) == {"paymentId": ["K1"], "qr": [result.qr_code_url]}
    assert result.gateway_reference == "DHO1"


def test_sepay_normalizes_wrapped_body(services):
    adapter = services.gateways.get("sepay")
    webhook = adapter.normalize_webhook(
        {"body": {"id": 92704, "referenceCode": "FT2411", "transferType": "in", "transferAmount": 100000, "content": "DHO1 thanh toan"}}
    )

    assert webhook.transaction_id == "FT2411"
    assert webhook.webhook_id == "92704"
    assert webhook.amount == Decimal("100000")
    assert webhook.status == "completed"
    assert adapter.extract_order_id(webhook) == "O1"


def test_sepay_outgoing_transfer_is_informational(services):
    webhook = services.gateways.get("sepay").normalize_webhook({"id": 1, "transferType": "out", "transferAmount": 5})
    assert webhook.status is None


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"description": "CK DH42 cam on"}, "42"),
        ({"memo": "dhABC-7"}, "ABC-7"),
        ({"content": "no token", "note": "DH_99"}, "_99"),
        ({"bank_note": "paid via app DHZ1"}, "Z1"),
        ({"content": "ADH5 missing boundary"}, None),
    ],
)
def test_sepay_order_token_extraction(services, payload, expected):
    adapter = services.gateways.get("sepay")
    webhook = adapter.normalize_webhook({"id": 1, **payload})
    assert adapter.extract_order_id(webhook) == expected


def test_sepay_signature_covers_projection_only(services):
    adapter = services.gateways.get("sepay")
    body = {"id": 1, "referenceCode": "FT1", "transferAmount": 100000, "transferType": "in", "content": "DHO1"}
    projection = {"id": 1, "transferType": "in", "transferAmount": 100000, "referenceCode": "FT1", "content": "DHO1"}
    signature = signatures.sign(projection, "sepay-secret")

    assert adapter.verify_signature(body, signature)
    assert adapter.verify_signature({**body, "unsigned_extra": "x"}, signature)
    assert not adapter.verify_signature({**body, "transferAmount": 1}, signature)


def test_momo_create_sends_signed_capture_wallet_request(settings):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"resultCode": 0, "payUrl": "http://momo.test/pay/1", "message": "ok"})

    result = _registry(settings, handler).get("momo").create(_request())

    body = seen[0]
    assert body["requestType"] == "captureWallet"
    assert body["orderId"].startswith("ORDER_O1_")
    assert body["extraData"] == "name=An"
    raw = "&".join(f"{name}={body[name]}" for name in MomoAdapter.CREATE_SIGNATURE_FIELDS)
    assert body["signature"] == signatures.sign_bytes(raw.encode(), "momo-secret")
    assert result.payment_url == "http://momo.test/pay/1"
    assert result.gateway_reference == body["orderId"]


def test_momo_rejection_is_definite_failure(settings):
    adapter = _registry(settings, lambda r: httpx.Response(200, json={"resultCode": 1001, "message": "bad"})).get("momo")
    with pytest.raises(GatewayUnavailable) as excinfo:
        adapter.create(_request())
    assert not isinstance(excinfo.value, GatewayTimeout)


def test_read_timeout_is_ambiguous(settings):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayTimeout) as excinfo:
        _registry(settings, handler).get("momo").create(_request())
    assert excinfo.value.ambiguous


def test_connect_failure_is_definite(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayUnavailable) as excinfo:
        _registry(settings, handler).get("momo").create(_request())
    assert not getattr(excinfo.value, "ambiguous", False)


def _momo_ipn(**overrides):
    ipn = {
        "partnerCode": "MOMOTEST",
        "orderId": "ORDER_O1_1700000000000",
        "requestId": "MOMOTEST1700000000000",
        "amount": 100000,
        "orderInfo": "pay with MoMo - ORDER_O1_1700000000000",
        "orderType": "momo_wallet",
        "transId": 4088878653,
        "resultCode": 0,
        "message": "Successful.",
        "payType": "qr",
        "responseTime": 1700000005000,
        "extraData": "",
    }
    ipn.update(overrides)
    signed = {**ipn, "accessKey": "momo-access"}
    raw = "&".join(f"{name}={signed.get(name, '')}" for name in MomoAdapter.IPN_SIGNATURE_FIELDS)
    ipn["signature"] = signatures.sign_bytes(raw.encode(), "momo-secret")
    return ipn


def test_momo_ipn_signature_and_extraction(services):
    adapter = services.gateways.get("momo")
    ipn = _momo_ipn()

    assert adapter.verify_signature(ipn, None)
    assert not adapter.verify_signature({**ipn, "amount": 1}, None)

    webhook = adapter.normalize_webhook(ipn)
    assert webhook.status == "completed"
    assert webhook.transaction_id == "4088878653"
    assert webhook.merchant_reference == "ORDER_O1_1700000000000"
    assert adapter.extract_order_id(webhook) == "O1"


def test_momo_failed_ipn(services):
    webhook = services.gateways.get("momo").normalize_webhook(_momo_ipn(resultCode=1006))
    assert webhook.status == "failed"


def test_paypal_converts_vnd_with_floor(services):
    adapter = services.gateways.get("paypal")
    assert adapter.to_usd(Decimal("230000"), "VND") == Decimal("10.00")
    assert adapter.to_usd(Decimal("10"), "VND") == Decimal("0.01")
    assert adapter.to_usd(Decimal("12.345"), "USD") == Decimal("12.35")


def test_paypal_token_is_cached(services, gateway_http):
    adapter = services.gateways.get("paypal")
    adapter.create_order("O1", Decimal("230000"), "VND", request_id="K1")
    adapter.create_order("O2", Decimal("230000"), "VND", request_id="K2")

    assert len(gateway_http.calls_to("/v1/oauth2/token")) == 1
    order_call = gateway_http.calls_to("/v2/checkout/orders")[0]
    body = json.loads(order_call.content)
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "10.00"}
    assert order_call.headers["PayPal-Request-Id"] == "K1"


def test_paypal_capture_resolves_already_captured(settings):
    state = {"captured": False}

    def handler(request):
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
        if path.endswith("/capture"):
            state["captured"] = True
            return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
        status = "COMPLETED" if state["captured"] else "APPROVED"
        return httpx.Response(200, json={"id": "PP1", "status": status})

    details = _registry(settings, handler).get("paypal").capture_order("PP1")
    assert details["status"] == "COMPLETED"


def test_paypal_webhook_normalization(services):
    adapter = services.gateways.get("paypal")
    event = {
        "id": "WH-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource_type": "capture",
        "resource": {
            "id": "CAP-1",
            "amount": {"value": "10.00", "currency_code": "USD"},
            "custom_id": "O1",
            "supplementary_data": {"related_ids": {"order_id": "PP-ORDER-1"}},
        },
    }
    webhook = adapter.normalize_webhook(event)

    assert webhook.status == "completed"
    assert webhook.transaction_id == "CAP-1"
    assert webhook.merchant_reference == "PP-ORDER-1"
    assert adapter.extract_order_id(webhook) == "O1"

    approved = adapter.normalize_webhook({**event, "event_type": "CHECKOUT.ORDER.APPROVED"})
    assert approved.status is None
