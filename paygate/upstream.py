from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from paygate import signatures
from paygate.config import Settings
from paygate.errors import OrderLookupFailed
from paygate.gateways import to_decimal
from paygate.models import PaymentCallback, PaymentRequest, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class OrderInfo:
    id: str
    total_amount: Decimal
    currency: str = "VND"
    customer_data: dict = field(default_factory=dict)
    description: Optional[str] = None


def _order_key(order_id: str):
    # The order system signs numeric ids as JSON numbers
    return int(order_id) if str(order_id).isdigit() else order_id


class OrderSystemClient:
    def __init__(self, settings: Settings, http_client: httpx.Client = None):
        self.settings = settings
        self.http = http_client or httpx.Client(timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS))

    @property
    def configured(self) -> bool:
        return bool(self.settings.order_system_url and self.settings.ORDER_SYSTEM_SECRET)

    def orders_url(self, order_id: str) -> str:
        return f"{self.settings.order_system_url}/api/payment-service/orders/{order_id}"

    def signed_headers(self, payload: Mapping[str, Any]) -> dict:
        return {
            self.settings.SIGNATURE_HEADER: signatures.sign(payload, self.settings.ORDER_SYSTEM_SECRET),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def _get_order(self, order_id: str) -> httpx.Response:
        return self.http.get(self.orders_url(order_id), headers=self.signed_headers({"order_id": _order_key(order_id)}))

    def fetch_order(self, order_id: str) -> OrderInfo:
        """Signed read of the order; retried on transport errors only."""
        if not self.configured:
            raise OrderLookupFailed("order system URL or secret is not configured")
        try:
            response = self._get_order(order_id)
        except httpx.HTTPError as exc:
            logger.error("order_fetch_failed", order_id=order_id, error=str(exc))
            raise OrderLookupFailed(f"order system unreachable: {exc}")

        if response.is_error:
            logger.error("order_fetch_rejected", order_id=order_id, status_code=response.status_code, body=response.text[:1000])
            raise OrderLookupFailed(f"order system returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise OrderLookupFailed("order system returned a non-JSON body")
        order = data.get("data", data) if isinstance(data, dict) else {}

        amount = to_decimal(order.get("total_amount"))
        if amount is None or amount <= 0:
            raise OrderLookupFailed(f"order {order_id} has no payable amount")

        return OrderInfo(
            id=str(order.get("id", order_id)),
            total_amount=amount,
            currency=order.get("currency") or "VND",
            customer_data=order.get("customer_data") or {},
            description=order.get("description"),
        )

    def post_signed(self, url: str, payload: Mapping[str, Any], signature: str) -> httpx.Response:
        """POST the exact bytes that were signed."""
        headers = {
            self.settings.SIGNATURE_HEADER: signature,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return self.http.post(url, content=signatures.canonical_json(payload), headers=headers)

    def status_url(self, order_id: str) -> str:
        return f"{self.orders_url(order_id)}/payment-status"

    def cancel_order(self, order_id: str, reason: str, payment_id: str) -> bool:
        """Ask the order system to release an order. Returns False on any failure."""
        if not self.configured:
            logger.warning("order_cancel_skipped", order_id=order_id, reason="order system not configured")
            return False

        headers = self.signed_headers({"order_id": _order_key(order_id)})
        body = {"reason": reason, "payment_id": payment_id}
        try:
            response = self.http.post(f"{self.orders_url(order_id)}/cancel", json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("order_cancel_failed", order_id=order_id, payment_id=payment_id, error=str(exc))
            return False

        if response.is_error:
            logger.error(
                "order_cancel_rejected",
                order_id=order_id,
                payment_id=payment_id,
                status_code=response.status_code,
                body=response.text[:1000],
            )
            return False

        logger.info("order_cancelled_upstream", order_id=order_id, payment_id=payment_id)
        return True


def status_payload(payment: PaymentRequest) -> dict:
    gateway_data = payment.gateway_data or {}
    return {
        "status": payment.status,
        "transaction_id": payment.transaction_id or gateway_data.get("transaction_id"),
        "gateway_response": gateway_data,
        "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
    }


class UpstreamNotifier:
    """
    Durable outbound status notifications.

    A PaymentCallback row is written before the first attempt so that a
    crash or an unreachable order system leaves something to retry.
    """

    def __init__(self, settings: Settings, client: OrderSystemClient):
        self.settings = settings
        self.client = client

    def notify_status(self, db: Session, payment: PaymentRequest) -> Optional[PaymentCallback]:
        if not self.client.configured:
            logger.warning(
                "upstream_notify_skipped",
                payment_id=payment.idempotency_key,
                reason="order system URL or secret is not configured",
            )
            return None

        payload = status_payload(payment)
        callback = PaymentCallback(
            payment_request=payment,
            callback_url=self.client.status_url(payment.order_id),
            payload=payload,
            signature=signatures.sign(payload, self.settings.ORDER_SYSTEM_SECRET),
            max_retries=self.settings.CALLBACK_MAX_RETRIES,
        )
        db.add(callback)
        db.commit()

        self.deliver(db, callback)
        return callback

    def notify_safely(self, db: Session, payment: PaymentRequest) -> Optional[PaymentCallback]:
        """Notify after a committed transition; a failure here never undoes it."""
        try:
            return self.notify_status(db, payment)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("upstream_notify_error", payment_id=payment.idempotency_key)
            return None

    def deliver(self, db: Session, callback: PaymentCallback) -> bool:
        try:
            response = self.client.post_signed(callback.callback_url, callback.payload, callback.signature)
        except httpx.HTTPError as exc:
            callback.mark_failed(response_body=str(exc))
            db.commit()
            logger.error(
                "upstream_notify_failed",
                callback_id=callback.id,
                retry_count=callback.retry_count,
                status=callback.status,
                error=str(exc),
            )
            return False

        if response.is_success:
            callback.mark_sent(response.status_code, response.text[:2000])
            db.commit()
            logger.info("upstream_notified", callback_id=callback.id, status_code=response.status_code)
            return True

        callback.mark_failed(response.status_code, response.text[:2000])
        db.commit()
        logger.error(
            "upstream_notify_rejected",
            callback_id=callback.id,
            status_code=response.status_code,
            retry_count=callback.retry_count,
            status=callback.status,
        )
        return False

    def retry_due(self, db: Session, now: datetime = None, limit: int = 100) -> dict:
        """Redeliver callbacks whose backoff has elapsed."""
        now = now or utcnow()
        due = (
            db.query(PaymentCallback)
            .filter(PaymentCallback.status == "retrying", PaymentCallback.next_retry_at <= now)
            .order_by(PaymentCallback.next_retry_at.asc())
            .limit(limit)
            .all()
        )
        summary = {"attempted": 0, "sent": 0, "failed": 0}
        for callback in due:
            summary["attempted"] += 1
            if self.deliver(db, callback):
                summary["sent"] += 1
            else:
                summary["failed"] += 1
        logger.info("upstream_retry_run", **summary)
        return summary
