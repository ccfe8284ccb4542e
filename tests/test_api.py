import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import paygate.auth
from paygate import signatures
from paygate.dependencies import build_services, get_services
from paygate.main import app as fastapi_app
from paygate.models import PaymentRequest
from paygate.schemas import CreatePaymentRequest

ORDER_SECRET = "order-secret"


@pytest.fixture
def client(services):
    fastapi_app.dependency_overrides[get_services] = lambda: services
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def operator(client):
    fastapi_app.dependency_overrides[paygate.auth.verify_token] = lambda: True
    return client


def _sign_creation(payload):
    return signatures.sign(signatures.creation_payload(CreatePaymentRequest(**payload)), ORDER_SECRET)


def _create(client, headers=None, **fields):
    payload = {"order_id": "O1", "payment_method": "sepay", "idempotency_key": "K1", "amount": 100000, **fields}
    signature = _sign_creation(payload)
    return client.post("/api/payments/create", json=payload, headers={"X-Signature": signature, **(headers or {})})


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_payment_success(client):
    response = _create(client)

    assert response.status_code == 200
    body = response.json()
    assert body["payment_id"] == "K1"
    assert body["status"] == "pending"
    assert body["qr_code_url"].startswith("https://qr.sepay.vn/img")


def test_idempotency_key_header(client):
    payload = {"order_id": "O1", "payment_method": "sepay", "amount": 100000}
    signature = _sign_creation(payload)

    response = client.post(
        "/api/payments/create",
        json=payload,
        headers={"X-Signature": signature, "X-Idempotency-Key": "HDR-1"},
    )

    assert response.status_code == 200
    assert response.json()["payment_id"] == "HDR-1"


def test_create_payment_invalid_signature(client, db):
    response = client.post(
        "/api/payments/create",
        json={"order_id": "O1", "payment_method": "sepay", "amount": 100000},
        headers={"X-Signature": "deadbeef"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "INVALID_SIGNATURE", "message": "Payment request authentication failed."}
    assert db.query(PaymentRequest).count() == 0


def test_create_payment_conflict(client):
    _create(client)
    response = _create(client, order_id="O2")

    assert response.status_code == 409
    assert response.json()["error"] == "IDEMPOTENCY_CONFLICT"


def test_create_payment_unsupported_method(client):
    response = _create(client, payment_method="crypto")
    assert response.status_code == 400
    assert response.json()["error"] == "UNSUPPORTED_PAYMENT_METHOD"


def test_gateway_error_is_not_leaked(settings, order_system):
    failing = httpx.Client(
        transport=httpx.MockTransport(lambda r: httpx.Response(500, text="Traceback: secret internals"))
    )
    fastapi_app.dependency_overrides[get_services] = lambda: build_services(settings, failing, order_system.client())
    with TestClient(fastapi_app) as c:
        response = _create(c, payment_method="momo")
    fastapi_app.dependency_overrides.clear()

    assert response.status_code == 502
    assert response.json()["error"] == "GATEWAY_UNAVAILABLE"
    assert "internals" not in response.text


def test_status_endpoint(client):
    _create(client)

    assert client.get("/api/payments/K1/status").json()["status"] == "pending"
    missing = client.get("/api/payments/nope/status")
    assert missing.status_code == 404
    assert missing.json()["error"] == "PAYMENT_NOT_FOUND"


def test_webhook_endpoint(client, services):
    _create(client)
    body = {"id": 1, "transferType": "in", "transferAmount": 100000, "referenceCode": "FT1", "content": "DHO1"}
    signature = signatures.sign(services.gateways.get("sepay")._signed_projection(body), "sepay-secret")

    response = client.post("/api/payments/webhooks/sepay", json=body, headers={"X-Signature": signature})

    assert response.status_code == 200
    assert response.json() == {"success": True, "matched": True, "status": "completed"}


def test_unmatched_webhook_still_acknowledged(client, services):
    body = {"id": 2, "transferType": "in", "transferAmount": 5, "referenceCode": "FT2", "content": "hello"}
    signature = signatures.sign(services.gateways.get("sepay")._signed_projection(body), "sepay-secret")

    response = client.post("/api/payments/webhooks/sepay", json=body, headers={"X-Signature": signature})

    assert response.status_code == 200
    assert response.json()["matched"] is False


def test_webhook_invalid_signature(client):
    response = client.post("/api/payments/webhooks/sepay", json={"id": 3}, headers={"X-Signature": "bad"})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"


def test_cancel_and_update_endpoints(client, signed_cancel):
    _create(client, idempotency_key="K1")
    _create(client, idempotency_key="K2", order_id="O2")

    intent, signature = signed_cancel("K1")
    cancelled = client.post("/api/payments/K1/cancel", json=intent.model_dump(), headers={"X-Signature": signature})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    update_signature = signatures.sign(signatures.status_update_payload("K2", "completed", "FT9"), ORDER_SECRET)
    updated = client.post(
        "/api/payments/K2/update-status",
        json={"status": "completed", "transaction_id": "FT9"},
        headers={"X-Signature": update_signature},
    )
    assert updated.status_code == 200
    assert updated.json()["updated"] is True


def test_operator_endpoints_require_token(client):
    assert client.get("/api/payments/history").status_code == 401
    assert client.post("/api/admin/sweep").status_code == 401
    bad = client.get("/api/payments/statistics", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


def test_operator_endpoints_accept_valid_token(client):
    token = jwt.encode({"sub": "ops"}, "jwt-secret", algorithm="HS256")
    response = client.get("/api/payments/statistics", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["total_payments"] == 0


def test_history_export(operator):
    _create(operator)

    response = operator.get("/api/payments/history/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.splitlines()[0].startswith("log_id,created_at,event_type")
    assert operator.get("/api/payments/K1/history").json()["events"][0]["event_type"] == "created"


def test_admin_sweep_and_callback_retry(operator):
    assert operator.post("/api/admin/sweep").json()["scanned"] == 0
    assert operator.post("/api/admin/callbacks/retry").json() == {"attempted": 0, "sent": 0, "failed": 0}
