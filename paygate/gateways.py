import enum
import hmac
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlencode

import httpx
import structlog

from paygate import signatures
from paygate.config import Settings
from paygate.errors import GatewayTimeout, GatewayUnavailable, UnsupportedPaymentMethod

logger = structlog.get_logger(__name__)


class PaymentMethod(str, enum.Enum):
    SEPAY = "sepay"
    MOMO = "momo"
    PAYPAL = "paypal"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            alias = METHOD_ALIASES.get(lowered, lowered)
            for member in cls:
                if member.value == alias:
                    return member
        return None


METHOD_ALIASES = {
    "bank-transfer": "sepay",
    "bank_transfer": "sepay",
    "wallet": "momo",
}


@dataclass
class GatewayRequest:
    payment_id: str
    order_id: str
    amount: Decimal
    currency: str
    return_url: str
    notify_url: str
    customer_data: dict = field(default_factory=dict)
    description: Optional[str] = None


@dataclass
class GatewayResult:
    transaction_id: str
    status: str = "pending"
    payment_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    # Reference the provider will echo back in its webhooks
    gateway_reference: Optional[str] = None
    raw: dict = field(default_factory=dict)

    def as_gateway_data(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status,
            "payment_url": self.payment_url,
            "qr_code_url": self.qr_code_url,
            "gateway_response": self.raw,
        }


@dataclass
class NormalizedWebhook:
    provider: str
    webhook_id: str
    event_type: str
    transaction_id: Optional[str]
    # completed | failed | None (informational, no transition)
    status: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    order_id: Optional[str]
    raw_payload: dict
    merchant_reference: Optional[str] = None


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class GatewayAdapter(ABC):
    method: PaymentMethod

    def __init__(self, settings: Settings, http_client: httpx.Client):
        self.settings = settings
        self.http = http_client

    @property
    def name(self) -> str:
        return self.method.value

    @abstractmethod
    def create(self, request: GatewayRequest) -> GatewayResult:
        ...

    @abstractmethod
    def normalize_webhook(self, raw: Mapping[str, Any]) -> NormalizedWebhook:
        ...

    @abstractmethod
    def verify_signature(self, raw: Mapping[str, Any], signature: Optional[str]) -> bool:
        ...

    def extract_order_id(self, webhook: NormalizedWebhook) -> Optional[str]:
        return None

    def embedded_signature(self, raw: Mapping[str, Any]) -> Optional[str]:
        """Signature carried inside the payload rather than in a header."""
        return None

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Perform one provider call.

        Failures before the request reached the provider are definite
        (GatewayUnavailable). A timeout after the request was sent is
        ambiguous: the provider may have acted on it.
        """
        try:
            return self.http.request(method, url, **kwargs)
        except (httpx.ReadTimeout, httpx.WriteTimeout) as exc:
            logger.error(
                "gateway_timeout_ambiguous",
                gateway=self.name,
                url=url,
                error=type(exc).__name__,
            )
            raise GatewayTimeout(f"{self.name} timed out after sending: {exc}", ambiguous=True)
        except httpx.TimeoutException as exc:
            logger.error("gateway_timeout", gateway=self.name, url=url, error=type(exc).__name__)
            raise GatewayTimeout(f"{self.name} timed out before sending: {exc}")
        except httpx.HTTPError as exc:
            logger.error("gateway_transport_error", gateway=self.name, url=url, error=str(exc))
            raise GatewayUnavailable(f"{self.name} transport error: {exc}")

    def _json(self, response: httpx.Response) -> dict:
        if response.is_error:
            logger.error(
                "gateway_http_error",
                gateway=self.name,
                status_code=response.status_code,
                body=response.text[:2000],
            )
            raise GatewayUnavailable(f"{self.name} returned HTTP {response.status_code}: {response.text[:500]}")
        try:
            return response.json()
        except ValueError:
            raise GatewayUnavailable(f"{self.name} returned a non-JSON body")


class SepayAdapter(GatewayAdapter):
    """Bank transfer via SePay QR. The transfer content ``DH<order_id>`` is the only link back."""

    method = PaymentMethod.SEPAY

    TRANSFER_PREFIX = "DH"
    ORDER_TOKEN = re.compile(r"\bDH([A-Za-z0-9_-]+)\b", re.IGNORECASE)
    TEXT_FIELDS = (
        "description",
        "memo",
        "order_description",
        "message",
        "content",
        "orderInfo",
        "note",
        "des",
    )
    SIGNED_FIELDS = (
        "id",
        "gateway",
        "transactionDate",
        "accountNumber",
        "transferType",
        "transferAmount",
        "referenceCode",
        "content",
    )

    def create(self, request: GatewayRequest) -> GatewayResult:
        if not self.settings.SEPAY_ACCOUNT:
            raise GatewayUnavailable("SEPAY_ACCOUNT is not configured")

        transfer_content = f"{self.TRANSFER_PREFIX}{request.order_id}"
        qr_code_url = f"{self.settings.SEPAY_QR_URL}?" + urlencode(
            {
                "acc": self.settings.SEPAY_ACCOUNT,
                "bank": self.settings.SEPAY_BANK,
                "amount": int(request.amount),
                "des": transfer_content,
                "template": "compact",
            }
        )
        payment_url = f"{self.settings.public_url}/sepay/confirm?" + urlencode(
            {"paymentId": request.payment_id, "qr": qr_code_url}
        )
        logger.info("sepay_qr_created", order_id=request.order_id, transfer_content=transfer_content)
        return GatewayResult(
            transaction_id=transfer_content,
            payment_url=payment_url,
            qr_code_url=qr_code_url,
            gateway_reference=transfer_content,
            raw={
                "account": self.settings.SEPAY_ACCOUNT,
                "bank": self.settings.SEPAY_BANK,
                "transfer_content": transfer_content,
            },
        )

    @staticmethod
    def unwrap(raw: Mapping[str, Any]) -> dict:
        body = raw.get("body")
        return dict(body) if isinstance(body, Mapping) else dict(raw)

    def normalize_webhook(self, raw: Mapping[str, Any]) -> NormalizedWebhook:
        body = self.unwrap(raw)
        reference = body.get("referenceCode") or body.get("id")
        transfer_type = (body.get("transferType") or "in").lower()
        return NormalizedWebhook(
            provider=self.name,
            webhook_id=str(body.get("id") or reference or signatures.payload_hash(body)),
            event_type=f"transfer.{transfer_type}",
            transaction_id=str(reference) if reference is not None else None,
            # Outgoing transfers never confirm a payment
            status="completed" if transfer_type == "in" else None,
            amount=to_decimal(body.get("transferAmount")),
            currency="VND",
            order_id=body.get("order_id"),
            raw_payload=body,
        )

    def _signed_projection(self, raw: Mapping[str, Any]) -> dict:
        body = self.unwrap(raw)
        return {name: body[name] for name in self.SIGNED_FIELDS if body.get(name) is not None}

    def verify_signature(self, raw: Mapping[str, Any], signature: Optional[str]) -> bool:
        return signatures.verify(self._signed_projection(raw), signature, self.settings.SEPAY_WEBHOOK_SECRET)

    def candidate_texts(self, raw: Mapping[str, Any]) -> list:
        texts = []
        for name in self.TEXT_FIELDS:
            value = raw.get(name)
            if isinstance(value, str) and value:
                texts.append(value)
        # Any other string field that happens to carry the token
        for name, value in raw.items():
            if name not in self.TEXT_FIELDS and isinstance(value, str) and "dh" in value.lower():
                texts.append(value)
        return texts

    def extract_order_id(self, webhook: NormalizedWebhook) -> Optional[str]:
        for text in self.candidate_texts(webhook.raw_payload):
            match = self.ORDER_TOKEN.search(text)
            if match:
                token = match.group(1)
                logger.info("sepay_order_token_extracted", raw_text=text, token=token)
                return token
        return None


class MomoAdapter(GatewayAdapter):
    """MoMo wallet, ``captureWallet`` flow."""

    method = PaymentMethod.MOMO

    REQUEST_TYPE = "captureWallet"
    ORDER_REFERENCE = re.compile(r"^ORDER_(.+)_\d+$")
    CREATE_SIGNATURE_FIELDS = (
        "accessKey",
        "amount",
        "extraData",
        "ipnUrl",
        "orderId",
        "orderInfo",
        "partnerCode",
        "redirectUrl",
        "requestId",
        "requestType",
    )
    IPN_SIGNATURE_FIELDS = (
        "accessKey",
        "amount",
        "extraData",
        "message",
        "orderId",
        "orderInfo",
        "orderType",
        "partnerCode",
        "payType",
        "requestId",
        "responseTime",
        "resultCode",
        "transId",
    )

    def _sign(self, params: Mapping[str, Any], fields: Iterable[str]) -> str:
        raw_signature = "&".join(f"{name}={params.get(name, '')}" for name in fields)
        return signatures.sign_bytes(raw_signature.encode("utf-8"), self.settings.MOMO_SECRET_KEY)

    def create(self, request: GatewayRequest) -> GatewayResult:
        if not (self.settings.MOMO_PARTNER_CODE and self.settings.MOMO_ACCESS_KEY and self.settings.MOMO_SECRET_KEY):
            raise GatewayUnavailable("MoMo credentials are not configured")

        timestamp = int(time.time() * 1000)
        order_reference = f"ORDER_{request.order_id}_{timestamp}"
        params = {
            "accessKey": self.settings.MOMO_ACCESS_KEY,
            "amount": str(int(request.amount)),
            "extraData": "&".join(f"{k}={v}" for k, v in (request.customer_data or {}).items()),
            "ipnUrl": request.notify_url,
            "orderId": order_reference,
            "orderInfo": f"pay with MoMo - {order_reference}",
            "partnerCode": self.settings.MOMO_PARTNER_CODE,
            "redirectUrl": request.return_url,
            "requestId": f"{self.settings.MOMO_PARTNER_CODE}{timestamp}",
            "requestType": self.REQUEST_TYPE,
        }
        body = {**params, "signature": self._sign(params, self.CREATE_SIGNATURE_FIELDS), "lang": "en"}

        url = f"{self.settings.MOMO_API_URL.rstrip('/')}/create"
        logger.info("momo_create_request", order_id=request.order_id, momo_order_id=order_reference)
        data = self._json(self._send("POST", url, json=body))

        if data.get("resultCode") != 0:
            logger.error("momo_create_rejected", result_code=data.get("resultCode"), message=data.get("message"))
            raise GatewayUnavailable(f"MoMo rejected payment: {data.get('resultCode')} {data.get('message')}")

        pay_url = data.get("payUrl") or data.get("deeplink")
        if not pay_url:
            raise GatewayUnavailable("MoMo did not return a payUrl")

        return GatewayResult(
            transaction_id=order_reference,
            payment_url=pay_url,
            qr_code_url=data.get("qrCodeUrl"),
            gateway_reference=order_reference,
            raw={
                "requestId": params["requestId"],
                "orderId": order_reference,
                "resultCode": data.get("resultCode"),
                "message": data.get("message"),
            },
        )

    def normalize_webhook(self, raw: Mapping[str, Any]) -> NormalizedWebhook:
        trans_id = raw.get("transId")
        result_code = raw.get("resultCode")
        try:
            succeeded = int(result_code) == 0
        except (TypeError, ValueError):
            succeeded = False
        return NormalizedWebhook(
            provider=self.name,
            webhook_id=str(trans_id or f"{raw.get('orderId')}:{raw.get('requestId')}"),
            event_type=f"ipn.{result_code}",
            transaction_id=str(trans_id) if trans_id is not None else None,
            status="completed" if succeeded else "failed",
            amount=to_decimal(raw.get("amount")),
            currency="VND",
            order_id=None,
            raw_payload=dict(raw),
            merchant_reference=raw.get("orderId"),
        )

    def embedded_signature(self, raw: Mapping[str, Any]) -> Optional[str]:
        return raw.get("signature")

    def verify_signature(self, raw: Mapping[str, Any], signature: Optional[str]) -> bool:
        provided = raw.get("signature") or signature
        if not provided or not self.settings.MOMO_SECRET_KEY:
            return False
        params = {**raw, "accessKey": self.settings.MOMO_ACCESS_KEY}
        expected = self._sign(params, self.IPN_SIGNATURE_FIELDS)
        return hmac.compare_digest(expected, str(provided).lower())

    def extract_order_id(self, webhook: NormalizedWebhook) -> Optional[str]:
        reference = webhook.merchant_reference or ""
        match = self.ORDER_REFERENCE.match(reference)
        if match:
            logger.info("momo_order_reference_extracted", reference=reference, order_id=match.group(1))
            return match.group(1)
        return None


class PaypalAdapter(GatewayAdapter):
    """
    PayPal checkout.

    Creation only issues a link to our own checkout page; the PayPal order is
    created (``create_order``) and captured (``capture_order``) from that
    page through the v2 Orders API.
    """

    method = PaymentMethod.PAYPAL

    COMPLETED_EVENTS = {"PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED"}
    FAILED_EVENTS = {"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"}
    ALREADY_CAPTURED_ISSUES = {"ORDER_ALREADY_CAPTURED", "TRANSACTION_REFUSED"}

    def __init__(self, settings: Settings, http_client: httpx.Client):
        super().__init__(settings, http_client)
        self._access_token = None
        self._token_expires_at = 0.0

    @property
    def api_url(self) -> str:
        return self.settings.PAYPAL_API_URL.rstrip("/")

    def create(self, request: GatewayRequest) -> GatewayResult:
        reference = f"PAYPAL_{request.order_id}_{int(time.time() * 1000)}"
        return GatewayResult(
            transaction_id=reference,
            payment_url=f"{self.settings.public_url}/paypal?" + urlencode({"paymentId": request.payment_id}),
            gateway_reference=reference,
            raw={"reference": reference},
        )

    def _token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not (self.settings.PAYPAL_CLIENT_ID and self.settings.PAYPAL_CLIENT_SECRET):
            raise GatewayUnavailable("PayPal credentials are not configured")

        response = self._send(
            "POST",
            f"{self.api_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.settings.PAYPAL_CLIENT_ID, self.settings.PAYPAL_CLIENT_SECRET),
        )
        data = self._json(response)
        self._access_token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 0)) - 60
        logger.info("paypal_token_refreshed")
        return self._access_token

    def _headers(self, **extra) -> dict:
        return {"Authorization": f"Bearer {self._token()}", "Content-Type": "application/json", **extra}

    def to_usd(self, amount: Decimal, currency: str) -> Decimal:
        if (currency or "").upper() != "VND":
            return Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        usd = (Decimal(amount) / Decimal(str(self.settings.PAYPAL_VND_TO_USD_RATE))).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        return max(usd, Decimal("0.01"))

    def create_order(self, order_id: str, amount: Decimal, currency: str, request_id: str) -> dict:
        value = self.to_usd(amount, currency)
        currency_code = "USD" if (currency or "").upper() == "VND" else currency.upper()
        thank_you = f"{self.settings.order_system_url}/thank-you?" + urlencode({"order_id": order_id})
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order_id,
                    "custom_id": order_id,
                    "description": f"Payment for order {order_id}",
                    "amount": {"currency_code": currency_code, "value": f"{value:.2f}"},
                }
            ],
            "application_context": {
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": thank_you,
                "cancel_url": f"{thank_you}&cancelled=true",
            },
        }
        response = self._send(
            "POST",
            f"{self.api_url}/v2/checkout/orders",
            json=body,
            headers=self._headers(**{"PayPal-Request-Id": request_id}),
        )
        data = self._json(response)
        if not data.get("id"):
            raise GatewayUnavailable(f"PayPal order creation returned no id: {data.get('status')}")
        logger.info("paypal_order_created", order_id=order_id, paypal_order_id=data["id"], value=str(value))
        return {"paypal_order_id": data["id"], "status": data.get("status"), "amount": str(value), "currency": currency_code}

    def get_order_details(self, paypal_order_id: str) -> dict:
        response = self._send("GET", f"{self.api_url}/v2/checkout/orders/{paypal_order_id}", headers=self._headers())
        return self._json(response)

    def capture_order(self, paypal_order_id: str) -> dict:
        try:
            details = self.get_order_details(paypal_order_id)
        except GatewayUnavailable as exc:
            logger.warning("paypal_order_details_unavailable", paypal_order_id=paypal_order_id, error=exc.detail)
        else:
            if details.get("status") == "COMPLETED":
                logger.info("paypal_order_already_completed", paypal_order_id=paypal_order_id)
                return details
            if details.get("status") != "APPROVED":
                logger.warning("paypal_order_not_approved", paypal_order_id=paypal_order_id, status=details.get("status"))

        response = self._send(
            "POST",
            f"{self.api_url}/v2/checkout/orders/{paypal_order_id}/capture",
            json={},
            headers=self._headers(),
        )
        if response.is_error:
            issue = self._error_issue(response)
            if issue in self.ALREADY_CAPTURED_ISSUES:
                details = self.get_order_details(paypal_order_id)
                if details.get("status") == "COMPLETED":
                    logger.info("paypal_order_already_captured", paypal_order_id=paypal_order_id, issue=issue)
                    return details
        data = self._json(response)
        logger.info("paypal_order_captured", paypal_order_id=paypal_order_id, status=data.get("status"))
        return data

    @staticmethod
    def _error_issue(response: httpx.Response) -> str:
        try:
            details = response.json().get("details") or []
        except ValueError:
            return ""
        return (details[0] or {}).get("issue", "") if details else ""

    @staticmethod
    def capture_id(capture: Mapping[str, Any]) -> Optional[str]:
        for unit in capture.get("purchase_units") or []:
            for item in (unit.get("payments") or {}).get("captures") or []:
                if item.get("id"):
                    return item["id"]
        return None

    def normalize_webhook(self, raw: Mapping[str, Any]) -> NormalizedWebhook:
        event_type = raw.get("event_type") or ""
        resource = raw.get("resource") or {}
        units = resource.get("purchase_units") or [{}]
        unit = units[0] or {}
        amount = resource.get("amount") or unit.get("amount") or {}
        related_order = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")

        if event_type in self.COMPLETED_EVENTS:
            status = "completed"
        elif event_type in self.FAILED_EVENTS:
            status = "failed"
        else:
            status = None

        return NormalizedWebhook(
            provider=self.name,
            webhook_id=str(raw.get("id") or signatures.payload_hash(raw)),
            event_type=event_type,
            transaction_id=resource.get("id"),
            status=status,
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            order_id=unit.get("reference_id"),
            raw_payload=dict(raw),
            merchant_reference=related_order,
        )

    def _signed_projection(self, raw: Mapping[str, Any]) -> dict:
        resource = raw.get("resource") or {}
        projection = {
            "id": raw.get("id"),
            "event_type": raw.get("event_type"),
            "resource_type": raw.get("resource_type"),
            "resource_id": resource.get("id"),
        }
        return {k: v for k, v in projection.items() if v is not None}

    def verify_signature(self, raw: Mapping[str, Any], signature: Optional[str]) -> bool:
        return signatures.verify(self._signed_projection(raw), signature, self.settings.PAYPAL_WEBHOOK_SECRET)

    def extract_order_id(self, webhook: NormalizedWebhook) -> Optional[str]:
        resource = webhook.raw_payload.get("resource") or {}
        units = resource.get("purchase_units") or [{}]
        for source in (resource, units[0] or {}):
            for name in ("custom_id", "invoice_id"):
                if source.get(name):
                    return str(source[name])
        return None


ADAPTERS = {
    PaymentMethod.SEPAY: SepayAdapter,
    PaymentMethod.MOMO: MomoAdapter,
    PaymentMethod.PAYPAL: PaypalAdapter,
}


class GatewayRegistry:
    def __init__(self, adapters: Iterable[GatewayAdapter]):
        self._adapters = {adapter.method: adapter for adapter in adapters}

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.Client = None) -> "GatewayRegistry":
        client = http_client or httpx.Client(timeout=httpx.Timeout(settings.GATEWAY_TIMEOUT_SECONDS))
        return cls(adapter_cls(settings, client) for adapter_cls in ADAPTERS.values())

    def resolve(self, method: Any) -> PaymentMethod:
        try:
            resolved = PaymentMethod(method)
        except ValueError:
            raise UnsupportedPaymentMethod(f"unsupported payment method: {method!r}")
        if resolved not in self._adapters:
            raise UnsupportedPaymentMethod(f"no adapter registered for {resolved.value}")
        return resolved

    def get(self, method: Any) -> GatewayAdapter:
        return self._adapters[self.resolve(method)]

    def is_supported(self, method: Any) -> bool:
        try:
            self.resolve(method)
        except UnsupportedPaymentMethod:
            return False
        return True

    def __iter__(self):
        return iter(self._adapters.values())
