import os

# Settings are read once; point them at the test database and test secrets first
os.environ.update(
    {
        "DATABASE_URL": "sqlite:///./test_temp.db",
        "ORDER_SYSTEM_SECRET": "order-secret",
        "ORDER_SYSTEM_URL": "http://orders.test",
        "PUBLIC_URL": "http://pay.test",
        "SEPAY_ACCOUNT": "0123456789",
        "SEPAY_BANK": "MBBank",
        "SEPAY_WEBHOOK_SECRET": "sepay-secret",
        "MOMO_PARTNER_CODE": "MOMOTEST",
        "MOMO_ACCESS_KEY": "momo-access",
        "MOMO_SECRET_KEY": "momo-secret",
        "MOMO_API_URL": "http://momo.test/v2/gateway/api",
        "PAYPAL_API_URL": "http://paypal.test",
        "PAYPAL_CLIENT_ID": "paypal-client",
        "PAYPAL_CLIENT_SECRET": "paypal-client-secret",
        "PAYPAL_WEBHOOK_SECRET": "paypal-secret",
        "JWT_SECRET": "jwt-secret",
        "LOG_JSON": "false",
    }
)

import httpx
import pytest

from paygate import signatures
from paygate.config import get_settings
from paygate.database import Base, SessionLocal, engine
from paygate.dependencies import build_services
from paygate.models import PaymentLog, PaymentRequest, utcnow
from paygate.schemas import CancelPaymentRequest, CreatePaymentRequest

ORDER_SECRET = "order-secret"


class RecordingTransport:
    """httpx MockTransport that keeps every request it served."""

    def __init__(self, responder):
        self.requests = []
        self.responder = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def calls_to(self, fragment: str) -> list:
        return [r for r in self.requests if fragment in str(r.url)]


def gateway_responder(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/create"):
        return httpx.Response(200, json={"resultCode": 0, "message": "Successful.", "payUrl": "http://momo.test/pay/abc"})
    if path == "/v1/oauth2/token":
        return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 3600})
    if path == "/v2/checkout/orders" and request.method == "POST":
        return httpx.Response(201, json={"id": "PP-ORDER-1", "status": "CREATED"})
    if path.endswith("/capture"):
        return httpx.Response(
            201,
            json={
                "id": "PP-ORDER-1",
                "status": "COMPLETED",
                "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
            },
        )
    if path.startswith("/v2/checkout/orders/"):
        return httpx.Response(200, json={"id": "PP-ORDER-1", "status": "APPROVED"})
    return httpx.Response(404, json={"message": "not found"})


def order_system_responder(request: httpx.Request) -> httpx.Response:
    if request.method == "GET":
        order_id = request.url.path.rstrip("/").split("/")[-1]
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {"id": order_id, "total_amount": 250000, "currency": "VND", "customer_data": {"name": "An"}},
            },
        )
    return httpx.Response(200, json={"success": True})


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def gateway_http():
    return RecordingTransport(gateway_responder)


@pytest.fixture
def order_system():
    return RecordingTransport(order_system_responder)


@pytest.fixture
def services(settings, gateway_http, order_system):
    return build_services(settings, gateway_http.client(), order_system.client())


@pytest.fixture
def make_payment(db, services):
    """Create a payment through the service with a correctly signed request."""

    def _make(key="K1", order_id="O1", payment_method="sepay", amount=100000, **fields):
        request = CreatePaymentRequest(
            order_id=order_id,
            payment_method=payment_method,
            idempotency_key=key,
            amount=amount,
            **fields,
        )
        signature = signatures.sign(signatures.creation_payload(request), ORDER_SECRET)
        return services.payments.create_payment(db, request, signature)

    return _make


@pytest.fixture
def signed_cancel():
    def _cancel(payment_id, payment_method="sepay", timestamp=None, **fields):
        intent = CancelPaymentRequest(
            payment_method=payment_method,
            timestamp=timestamp or utcnow().isoformat() + "Z",
            **fields,
        )
        signature = signatures.sign(signatures.cancellation_payload(payment_id, intent), ORDER_SECRET)
        return intent, signature

    return _cancel


@pytest.fixture
def load_payment(db):
    def _load(key):
        db.expire_all()
        return db.query(PaymentRequest).filter_by(idempotency_key=key).one()

    return _load


@pytest.fixture
def events(db):
    def _events(key):
        db.expire_all()
        payment = db.query(PaymentRequest).filter_by(idempotency_key=key).one()
        return [
            entry.event_type
            for entry in db.query(PaymentLog).filter_by(payment_request_id=payment.id).order_by(PaymentLog.id)
        ]

    return _events
