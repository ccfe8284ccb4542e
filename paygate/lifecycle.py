"""Payment lifecycle: pending -> completed | failed | cancelled."""
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from paygate.models import PaymentLog, PaymentRequest, PaymentStatus, utcnow

logger = structlog.get_logger(__name__)

# Event log types
CREATED = "created"
INITIATED = "initiated"
WEBHOOK_RECEIVED = "webhook_received"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
IDEMPOTENT_REQUEST = "idempotent_request"
DUPLICATE_WEBHOOK = "duplicate_webhook"
GATEWAY_ERROR = "gateway_error"
STATUS_UPDATED_FROM_ORDER_SYSTEM = "status_updated_from_laravel"
BANK_TX_LOGGED = "bank_tx_logged"
PAYPAL_ORDER_CREATED = "paypal_order_created"
PAYPAL_ORDER_CAPTURED = "paypal_order_captured"


def record_event(
    db: Session,
    payment: PaymentRequest,
    event_type: str,
    event_data: Optional[dict] = None,
    gateway_response: Optional[dict] = None,
) -> PaymentLog:
    entry = PaymentLog(
        payment_request=payment,
        event_type=event_type,
        event_data=event_data or {},
        gateway_response=gateway_response,
    )
    db.add(entry)
    return entry


def is_logically_expired(payment: PaymentRequest, now: datetime = None) -> bool:
    """A pending payment past its TTL is dead to readers even before it is swept."""
    return payment.is_pending() and payment.is_expired(now)


def lock_payment(db: Session, **criteria) -> Optional[PaymentRequest]:
    """Load one payment with a row lock held until the caller commits."""
    return (
        db.query(PaymentRequest)
        .filter_by(**criteria)
        .populate_existing()
        .with_for_update()
        .first()
    )


def apply_transition(
    db: Session,
    payment: PaymentRequest,
    target: PaymentStatus,
    *,
    event_type: Optional[str] = None,
    transaction_id: Optional[str] = None,
    gateway_data: Optional[dict] = None,
    gateway_response: Optional[Any] = None,
    event_data: Optional[dict] = None,
    now: datetime = None,
) -> bool:
    """
    Move ``payment`` from pending to ``target``.

    Returns False without touching the record when it already left pending,
    including when another session moved it after ``payment`` was loaded.
    The caller commits.
    """
    target = PaymentStatus(target)
    if target is PaymentStatus.PENDING:
        raise ValueError("pending is not a transition target")

    if not payment.is_pending():
        logger.info(
            "transition_ignored",
            payment_id=payment.idempotency_key,
            current_status=payment.status,
            requested_status=target.value,
        )
        return False

    now = now or utcnow()
    if payment.id is None:
        db.flush()
    # Compare-and-set on the stored status; row locks are not available on every backend
    claimed = (
        db.query(PaymentRequest)
        .filter(PaymentRequest.id == payment.id, PaymentRequest.status == PaymentStatus.PENDING.value)
        .update({PaymentRequest.status: target.value, PaymentRequest.updated_at: now}, synchronize_session=False)
    )
    if not claimed:
        db.expire(payment, ["status", "completed_at", "transaction_id", "expires_at"])
        logger.info(
            "transition_lost",
            payment_id=payment.idempotency_key,
            current_status=payment.status,
            requested_status=target.value,
        )
        return False

    previous = PaymentStatus.PENDING.value
    payment.status = target.value

    if target is PaymentStatus.COMPLETED:
        payment.completed_at = now
        if transaction_id:
            payment.transaction_id = transaction_id
    elif target is PaymentStatus.CANCELLED and payment.expires_at > now:
        payment.expires_at = now

    # Keyed by outcome so the creation-time snapshot is never replaced
    merged = dict(gateway_data or {})
    if gateway_response is not None:
        merged.setdefault(f"{target.value}_response", gateway_response)
    if merged:
        payment.merge_gateway_data(**merged)

    record_event(
        db,
        payment,
        event_type or target.value,
        event_data={"from": previous, "to": target.value, **(event_data or {})},
        gateway_response=gateway_response if isinstance(gateway_response, dict) else None,
    )
    logger.info(
        "payment_transition",
        payment_id=payment.idempotency_key,
        order_id=payment.order_id,
        from_status=previous,
        to_status=target.value,
        event_type=event_type or target.value,
    )
    return True
