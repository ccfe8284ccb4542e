# Field order of each canonical projection is part of the wire contract with the order system
import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

import structlog

from paygate.errors import InvalidSignature, ReplayWindowExceeded

logger = structlog.get_logger(__name__)

CREATION_OPTIONAL_FIELDS = (
    "idempotency_key",
    "session",
    "amount",
    "currency",
    "customer_data",
    "description",
)


def _normalize(value: Any) -> Any:
    """Render numbers the way a JavaScript/PHP signer would (100000.0 -> 100000)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_json(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(_normalize(payload), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def payload_hash(payload: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload)).hexdigest()


def sign(payload: Mapping[str, Any], secret: str) -> str:
    return sign_bytes(canonical_json(payload), secret)


def sign_bytes(message: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify(payload: Mapping[str, Any], signature: Optional[str], secret: str) -> bool:
    return verify_bytes(canonical_json(payload), signature, secret)


def verify_bytes(message: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = sign_bytes(message, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def require_valid(payload: Mapping[str, Any], signature: Optional[str], secret: str, *, operation: str) -> None:
    """Raise InvalidSignature unless ``signature`` signs ``payload``."""
    if not secret:
        logger.error("signature_secret_missing", operation=operation)
        raise InvalidSignature("signing secret is not configured")
    if not signature:
        logger.warning("signature_missing", operation=operation)
        raise InvalidSignature(f"missing signature for {operation}")
    if not verify(payload, signature, secret):
        logger.warning("signature_mismatch", operation=operation)
        raise InvalidSignature(f"invalid signature for {operation}")


def creation_payload(request) -> dict:
    """Signed projection of a payment creation request."""
    payload = {
        "order_id": request.order_id,
        "payment_method": request.payment_method,
    }
    for field in CREATION_OPTIONAL_FIELDS:
        value = getattr(request, field, None)
        if field == "amount":
            if value is not None:
                payload[field] = value
        elif value:
            payload[field] = value
    return payload


def cancellation_payload(payment_id: str, intent) -> dict:
    payload = {
        "payment_id": payment_id,
        "payment_method": intent.payment_method,
        "reason": intent.reason,
        "force": bool(intent.force),
        "cancelled_by": intent.cancelled_by,
        "timestamp": intent.timestamp,
    }
    if intent.metadata:
        payload["metadata"] = intent.metadata
    return payload


def status_update_payload(payment_id: str, status: str, transaction_id: Optional[str] = None) -> dict:
    payload = {"payment_id": payment_id, "status": status}
    if transaction_id:
        payload["transaction_id"] = transaction_id
    return payload


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into naive UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, TypeError, ValueError):
        raise ReplayWindowExceeded(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def check_timestamp(value: str, now: datetime, tolerance_seconds: int) -> None:
    """Reject signed requests outside the replay window."""
    drift = abs((now - parse_timestamp(value)).total_seconds())
    if drift > tolerance_seconds:
        logger.warning("signature_timestamp_drift", drift_seconds=round(drift, 1), tolerance=tolerance_seconds)
        raise ReplayWindowExceeded(f"timestamp drift {drift:.0f}s exceeds {tolerance_seconds}s")
