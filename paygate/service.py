import uuid
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate import lifecycle, signatures
from paygate.config import Settings
from paygate.errors import (
    GatewayTimeout,
    GatewayUnavailable,
    IdempotencyConflict,
    IdempotencyInProgress,
    OrderLookupFailed,
    PaymentError,
    PaymentExpired,
    PaymentMethodMismatch,
    PaymentNotFound,
)
from paygate.gateways import GatewayRegistry, GatewayRequest, GatewayResult, PaymentMethod
from paygate.idempotency import IdempotencyLedger
from paygate.models import PaymentRequest, PaymentStatus, utcnow
from paygate.schemas import (
    CancelPaymentRequest,
    CreatePaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
    UpdateStatusRequest,
)
from paygate.upstream import OrderInfo, OrderSystemClient, UpstreamNotifier

logger = structlog.get_logger(__name__)

EXPIRED_CANCEL_REASON = "Payment expired before completion"
DEFAULT_CANCEL_REASON = "Cancelled by order system"


def _caller_priced(request: CreatePaymentRequest) -> bool:
    # A missing or zero amount means the order system is the price authority
    return request.amount is not None and request.amount > 0


def status_response(payment: PaymentRequest) -> dict:
    gateway_data = payment.gateway_data or {}
    return PaymentStatusResponse(
        payment_id=payment.idempotency_key,
        session_id=payment.session_id,
        order_id=payment.order_id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        transaction_id=payment.transaction_id or gateway_data.get("transaction_id"),
        gateway_response=gateway_data,
        completed_at=payment.completed_at,
        expires_at=payment.expires_at,
    ).model_dump(mode="json")


class PaymentService:
    def __init__(
        self,
        settings: Settings,
        gateways: GatewayRegistry,
        ledger: IdempotencyLedger,
        orders: OrderSystemClient,
        notifier: UpstreamNotifier,
    ):
        self.settings = settings
        self.gateways = gateways
        self.ledger = ledger
        self.orders = orders
        self.notifier = notifier
        self.payment_ttl = timedelta(minutes=settings.PAYMENT_TTL_MINUTES)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_payment(
        self,
        db: Session,
        request: CreatePaymentRequest,
        signature: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Admit a signed creation request and start the payment at its gateway.

        Replays of the same key and payload return the cached response
        without calling the gateway again.
        """
        signed = signatures.creation_payload(request)
        signatures.require_valid(signed, signature, self.settings.ORDER_SYSTEM_SECRET, operation="create_payment")
        method = self.gateways.resolve(request.payment_method)

        key = idempotency_key or request.idempotency_key or uuid.uuid4().hex
        log = logger.bind(payment_id=key, order_id=str(request.order_id), payment_method=method.value)

        admission = self.ledger.admit(db, key, signed)
        if not admission.is_new:
            self._log_replay(db, key, source="ledger")
            return admission.cached_result

        replay = self._durable_replay(db, key, request, method)
        if replay is not None:
            return replay

        try:
            order = self._order_info(request)
        except PaymentError:
            self.ledger.invalidate(db, key)
            db.commit()
            raise

        payment = self._persist(db, key, request, method, order)
        log.info("payment_created", amount=str(order.total_amount), currency=order.currency)

        adapter = self.gateways.get(method)
        try:
            result = adapter.create(self._gateway_request(payment, order))
        except GatewayUnavailable as exc:
            if isinstance(exc, GatewayTimeout) and exc.ambiguous:
                self._hold_ambiguous(db, payment, exc)
            else:
                self._fail_creation(db, payment, exc)
            raise

        response = self._record_initiated(db, payment, result)
        self.ledger.commit(db, key, response)
        db.commit()
        log.info("payment_initiated", transaction_id=result.transaction_id)
        return response

    def _log_replay(self, db: Session, key: str, source: str) -> None:
        payment = db.query(PaymentRequest).filter_by(idempotency_key=key).first()
        if payment is not None:
            lifecycle.record_event(db, payment, lifecycle.IDEMPOTENT_REQUEST, {"source": source})
            db.commit()
        logger.info("idempotent_request", payment_id=key, source=source)

    def _durable_replay(
        self, db: Session, key: str, request: CreatePaymentRequest, method: PaymentMethod
    ) -> Optional[dict]:
        """The payment row outlives the ledger entry and always wins over an empty ledger."""
        existing = db.query(PaymentRequest).filter_by(idempotency_key=key).first()
        if existing is None:
            return None

        mismatched = (
            existing.order_id != str(request.order_id)
            or existing.payment_method != method.value
            or (_caller_priced(request) and request.amount != existing.amount)
        )
        if mismatched:
            self.ledger.invalidate(db, key)
            db.commit()
            logger.warning(
                "idempotency_conflict",
                payment_id=key,
                stored_order_id=existing.order_id,
                stored_payment_method=existing.payment_method,
                source="payment_record",
            )
            raise IdempotencyConflict(f"payment {key} exists with different order, method or amount")

        if existing.status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value) or lifecycle.is_logically_expired(
            existing
        ):
            self.ledger.invalidate(db, key)
            db.commit()
            raise PaymentExpired(f"payment {key} is {existing.status} and cannot be resumed")

        if not existing.response_data:
            # Gateway outcome unknown; leave the reservation in flight
            raise IdempotencyInProgress(f"payment {key} has no gateway response yet")

        self.ledger.commit(db, key, existing.response_data)
        lifecycle.record_event(db, existing, lifecycle.IDEMPOTENT_REQUEST, {"source": "payment_record"})
        db.commit()
        logger.info("idempotent_request", payment_id=key, source="payment_record")
        return dict(existing.response_data)

    def _order_info(self, request: CreatePaymentRequest) -> OrderInfo:
        if _caller_priced(request):
            return OrderInfo(
                id=str(request.order_id),
                total_amount=request.amount,
                currency=request.currency or "VND",
                customer_data=request.customer_data or {},
                description=request.description,
            )
        return self.orders.fetch_order(str(request.order_id))

    def _persist(
        self, db: Session, key: str, request: CreatePaymentRequest, method: PaymentMethod, order: OrderInfo
    ) -> PaymentRequest:
        now = utcnow()
        payment = PaymentRequest(
            idempotency_key=key,
            session_id=request.session or f"sess_{uuid.uuid4().hex}",
            order_id=str(request.order_id),
            payment_method=method.value,
            amount=order.total_amount,
            currency=order.currency,
            status=PaymentStatus.PENDING.value,
            gateway_data={},
            expires_at=now + self.payment_ttl,
            created_at=now,
            updated_at=now,
        )
        db.add(payment)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            self.ledger.invalidate(db, key)
            db.commit()
            raise IdempotencyConflict(f"session {request.session} is already bound to another payment")

        lifecycle.record_event(
            db,
            payment,
            lifecycle.CREATED,
            {
                "order_id": payment.order_id,
                "payment_method": method.value,
                "amount": str(order.total_amount),
                "currency": order.currency,
                "expires_at": payment.expires_at.isoformat(),
            },
        )
        db.commit()
        return payment

    def _gateway_request(self, payment: PaymentRequest, order: OrderInfo) -> GatewayRequest:
        return GatewayRequest(
            payment_id=payment.idempotency_key,
            order_id=payment.order_id,
            amount=order.total_amount,
            currency=order.currency,
            return_url=f"{self.settings.order_system_url}/thank-you?" + urlencode({"order_id": payment.order_id}),
            notify_url=f"{self.settings.public_url}/api/payments/webhooks/{payment.payment_method}",
            customer_data=order.customer_data,
            description=order.description,
        )

    def _fail_creation(self, db: Session, payment: PaymentRequest, exc: GatewayUnavailable) -> None:
        lifecycle.apply_transition(
            db,
            payment,
            PaymentStatus.FAILED,
            event_type=lifecycle.GATEWAY_ERROR,
            gateway_data={"failure_reason": exc.detail, "error_code": exc.code},
            event_data={"error_code": exc.code, "detail": exc.detail},
        )
        self.ledger.invalidate(db, payment.idempotency_key)
        db.commit()
        logger.error("gateway_create_failed", payment_id=payment.idempotency_key, error_code=exc.code, detail=exc.detail)

    def _hold_ambiguous(self, db: Session, payment: PaymentRequest, exc: GatewayTimeout) -> None:
        payment.merge_gateway_data(ambiguous_outcome=True, failure_reason=exc.detail)
        lifecycle.record_event(
            db,
            payment,
            lifecycle.GATEWAY_ERROR,
            {"ambiguous": True, "error_code": exc.code, "detail": exc.detail},
        )
        db.commit()
        logger.error(
            "gateway_outcome_ambiguous",
            payment_id=payment.idempotency_key,
            order_id=payment.order_id,
            payment_method=payment.payment_method,
            detail=exc.detail,
        )

    def _record_initiated(self, db: Session, payment: PaymentRequest, result: GatewayResult) -> dict:
        payment.gateway_reference = result.gateway_reference or result.transaction_id
        payment.merge_gateway_data(**result.as_gateway_data())
        response = PaymentResponse(
            payment_id=payment.idempotency_key,
            session_id=payment.session_id,
            idempotency_key=payment.idempotency_key,
            payment_url=result.payment_url,
            qr_code_url=result.qr_code_url,
            expires_at=payment.expires_at,
            status=payment.status,
        ).model_dump(mode="json")
        payment.response_data = response
        lifecycle.record_event(
            db,
            payment,
            lifecycle.INITIATED,
            {"transaction_id": result.transaction_id, "payment_url": result.payment_url},
            gateway_response=result.raw,
        )
        return response

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_payment_status(self, db: Session, payment_id: str, now: datetime = None) -> dict:
        payment = db.query(PaymentRequest).filter_by(idempotency_key=payment_id).first()
        if payment is None:
            raise PaymentNotFound(f"payment {payment_id} not found")
        if lifecycle.is_logically_expired(payment, now):
            raise PaymentExpired(f"payment {payment_id} expired at {payment.expires_at.isoformat()}")
        return status_response(payment)

    # ------------------------------------------------------------------
    # Explicit status update from the order system
    # ------------------------------------------------------------------

    def update_status(
        self, db: Session, payment_id: str, update: UpdateStatusRequest, signature: Optional[str]
    ) -> dict:
        signed = signatures.status_update_payload(payment_id, update.status, update.transaction_id)
        signatures.require_valid(signed, signature, self.settings.ORDER_SYSTEM_SECRET, operation="update_status")

        payment = lifecycle.lock_payment(db, idempotency_key=payment_id)
        if payment is None:
            raise PaymentNotFound(f"payment {payment_id} not found")

        extra = {}
        if payment.is_expired():
            extra["late_confirmation"] = True
        if update.status == PaymentStatus.CANCELLED.value:
            extra["cancellation"] = {"reason": DEFAULT_CANCEL_REASON, "cancelled_by": "order_system"}

        changed = lifecycle.apply_transition(
            db,
            payment,
            update.status,
            event_type=lifecycle.STATUS_UPDATED_FROM_ORDER_SYSTEM,
            transaction_id=update.transaction_id,
            gateway_response=update.gateway_response,
            gateway_data=extra,
            event_data={"source": "order_system"},
        )
        if changed:
            if update.status != PaymentStatus.COMPLETED.value:
                self.ledger.invalidate(db, payment_id)
        else:
            lifecycle.record_event(
                db,
                payment,
                lifecycle.IDEMPOTENT_REQUEST,
                {"requested_status": update.status, "current_status": payment.status},
            )
        db.commit()
        return {"updated": changed, **status_response(payment)}

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_payment(
        self,
        db: Session,
        payment_id: str,
        intent: CancelPaymentRequest,
        signature: Optional[str],
        now: datetime = None,
    ) -> dict:
        """
        Cancel a payment on behalf of the order system.

        The signature and its timestamp are checked before anything is
        read. Cancelling a payment that already reached a terminal state is
        a no-op.
        """
        now = now or utcnow()
        signed = signatures.cancellation_payload(payment_id, intent)
        signatures.require_valid(signed, signature, self.settings.ORDER_SYSTEM_SECRET, operation="cancel_payment")
        signatures.check_timestamp(intent.timestamp, now, self.settings.CANCEL_MAX_DRIFT_SECONDS)

        payment = lifecycle.lock_payment(db, idempotency_key=payment_id)
        if payment is None:
            raise PaymentNotFound(f"payment {payment_id} not found")

        requested = self.gateways.resolve(intent.payment_method)
        if requested.value != payment.payment_method:
            logger.warning(
                "cancel_method_mismatch",
                payment_id=payment_id,
                stored=payment.payment_method,
                requested=requested.value,
            )
            raise PaymentMethodMismatch(
                f"payment {payment_id} uses {payment.payment_method}, cancel requested for {requested.value}"
            )

        if payment.is_terminal():
            lifecycle.record_event(
                db,
                payment,
                lifecycle.IDEMPOTENT_REQUEST,
                {"requested_status": PaymentStatus.CANCELLED.value, "current_status": payment.status},
            )
            db.commit()
            logger.info("cancel_noop", payment_id=payment_id, status=payment.status)
            return {"cancelled": False, "payment_id": payment_id, "status": payment.status}

        expired = payment.is_expired(now)
        reason = intent.reason or (EXPIRED_CANCEL_REASON if expired else DEFAULT_CANCEL_REASON)
        cancelled_by = intent.cancelled_by or "order_system"
        lifecycle.apply_transition(
            db,
            payment,
            PaymentStatus.CANCELLED,
            gateway_data={
                "cancellation": {
                    "reason": reason,
                    "cancelled_by": cancelled_by,
                    "force": intent.force,
                    "requested_at": intent.timestamp,
                    "metadata": intent.metadata or {},
                }
            },
            event_data={"reason": reason, "cancelled_by": cancelled_by, "force": intent.force, "expired": expired},
            now=now,
        )
        self.ledger.invalidate(db, payment_id)
        db.commit()
        return {"cancelled": True, "payment_id": payment_id, "status": payment.status}

    # ------------------------------------------------------------------
    # PayPal checkout
    # ------------------------------------------------------------------

    def _live_paypal_payment(self, db: Session, payment_id: str) -> PaymentRequest:
        payment = lifecycle.lock_payment(db, idempotency_key=payment_id)
        if payment is None:
            raise PaymentNotFound(f"payment {payment_id} not found")
        if payment.payment_method != PaymentMethod.PAYPAL.value:
            raise PaymentMethodMismatch(f"payment {payment_id} is not a PayPal payment")
        return payment

    def create_paypal_order(self, db: Session, payment_id: str) -> dict:
        payment = self._live_paypal_payment(db, payment_id)
        if payment.is_completed():
            return {"payment_id": payment_id, "status": payment.status}
        if payment.is_terminal() or lifecycle.is_logically_expired(payment):
            raise PaymentExpired(f"payment {payment_id} is no longer payable")

        gateway_data = payment.gateway_data or {}
        if gateway_data.get("paypal_order_id"):
            return {
                "payment_id": payment_id,
                "paypal_order_id": gateway_data["paypal_order_id"],
                "amount": gateway_data.get("paypal_amount"),
                "currency": gateway_data.get("paypal_currency"),
                "status": payment.status,
            }

        adapter = self.gateways.get(PaymentMethod.PAYPAL)
        order = adapter.create_order(payment.order_id, payment.amount, payment.currency, request_id=payment_id)

        payment.merge_gateway_data(
            paypal_order_id=order["paypal_order_id"],
            paypal_amount=order["amount"],
            paypal_currency=order["currency"],
            checkout_reference=payment.gateway_reference,
        )
        # PayPal webhooks reference its own order id
        payment.gateway_reference = order["paypal_order_id"]
        lifecycle.record_event(db, payment, lifecycle.PAYPAL_ORDER_CREATED, order)
        db.commit()
        return {
            "payment_id": payment_id,
            "paypal_order_id": order["paypal_order_id"],
            "amount": order["amount"],
            "currency": order["currency"],
            "status": payment.status,
        }

    def capture_paypal_order(self, db: Session, payment_id: str, paypal_order_id: str) -> dict:
        payment = self._live_paypal_payment(db, payment_id)
        known_order = (payment.gateway_data or {}).get("paypal_order_id")
        if known_order != paypal_order_id:
            raise OrderLookupFailed(f"PayPal order {paypal_order_id} does not belong to payment {payment_id}")
        if payment.is_completed():
            return status_response(payment)
        if payment.is_terminal():
            raise PaymentExpired(f"payment {payment_id} is {payment.status}")

        adapter = self.gateways.get(PaymentMethod.PAYPAL)
        capture = adapter.capture_order(paypal_order_id)
        if capture.get("status") != "COMPLETED":
            lifecycle.record_event(
                db,
                payment,
                lifecycle.GATEWAY_ERROR,
                {"paypal_order_id": paypal_order_id, "paypal_status": capture.get("status")},
                gateway_response=capture,
            )
            db.commit()
            raise GatewayUnavailable(f"PayPal capture returned status {capture.get('status')}")

        extra = {"paypal_capture_id": adapter.capture_id(capture)}
        if payment.is_expired():
            extra["late_confirmation"] = True
        changed = lifecycle.apply_transition(
            db,
            payment,
            PaymentStatus.COMPLETED,
            event_type=lifecycle.PAYPAL_ORDER_CAPTURED,
            transaction_id=adapter.capture_id(capture) or paypal_order_id,
            gateway_response=capture,
            gateway_data=extra,
            event_data={"paypal_order_id": paypal_order_id},
        )
        db.commit()
        if changed:
            self.notifier.notify_safely(db, payment)
        return status_response(payment)
