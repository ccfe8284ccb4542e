import csv
import io
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from paygate.errors import PaymentNotFound
from paygate.models import PaymentLog, PaymentRequest, PaymentStatus

CSV_COLUMNS = (
    "log_id",
    "created_at",
    "event_type",
    "payment_id",
    "order_id",
    "payment_method",
    "status",
    "amount",
    "currency",
)


def _log_row(entry: PaymentLog) -> dict:
    payment = entry.payment_request
    return {
        "log_id": entry.id,
        "created_at": entry.created_at.isoformat(),
        "event_type": entry.event_type,
        "event_data": entry.event_data or {},
        "payment_id": payment.idempotency_key,
        "order_id": payment.order_id,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
    }


def _filtered_logs(
    db: Session,
    order_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = db.query(PaymentLog).join(PaymentLog.payment_request).options(joinedload(PaymentLog.payment_request))
    if order_id:
        query = query.filter(PaymentRequest.order_id == order_id)
    if payment_method:
        query = query.filter(PaymentRequest.payment_method == payment_method)
    if status:
        query = query.filter(PaymentRequest.status == status)
    if event_type:
        query = query.filter(PaymentLog.event_type == event_type)
    if date_from:
        query = query.filter(PaymentLog.created_at >= date_from)
    if date_to:
        query = query.filter(PaymentLog.created_at <= date_to)
    return query


def list_history(db: Session, page: int = 1, limit: int = 50, **filters) -> dict:
    page = max(page, 1)
    limit = min(max(limit, 1), 500)
    query = _filtered_logs(db, **filters)
    total = query.count()
    entries = (
        query.order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [_log_row(entry) for entry in entries],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


def payment_history(db: Session, payment_id: str) -> dict:
    """Everything that ever happened to one payment, oldest first."""
    payment = db.query(PaymentRequest).filter_by(idempotency_key=payment_id).first()
    if payment is None:
        raise PaymentNotFound(f"payment {payment_id} not found")

    return {
        "payment_id": payment.idempotency_key,
        "order_id": payment.order_id,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "created_at": payment.created_at.isoformat(),
        "expires_at": payment.expires_at.isoformat(),
        "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
        "events": [
            {
                "event_type": entry.event_type,
                "event_data": entry.event_data or {},
                "created_at": entry.created_at.isoformat(),
            }
            for entry in payment.logs
        ],
        "webhooks": [
            {
                "gateway": hook.gateway_name,
                "webhook_id": hook.webhook_id,
                "status": hook.status,
                "retry_count": hook.retry_count,
                "created_at": hook.created_at.isoformat(),
            }
            for hook in payment.webhooks
        ],
        "callbacks": [
            {
                "status": callback.status,
                "retry_count": callback.retry_count,
                "response_status": callback.response_status,
                "next_retry_at": callback.next_retry_at.isoformat() if callback.next_retry_at else None,
            }
            for callback in payment.callbacks
        ],
    }


def statistics(db: Session, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> dict:
    query = db.query(
        PaymentRequest.status,
        PaymentRequest.payment_method,
        PaymentRequest.amount,
        PaymentRequest.created_at,
    )
    if date_from:
        query = query.filter(PaymentRequest.created_at >= date_from)
    if date_to:
        query = query.filter(PaymentRequest.created_at <= date_to)

    by_status = defaultdict(lambda: {"count": 0, "amount": Decimal(0)})
    by_method = defaultdict(lambda: {"count": 0, "completed": 0, "amount": Decimal(0)})
    by_day = defaultdict(lambda: {"count": 0, "completed": 0, "amount": Decimal(0)})
    total = 0

    for status, method, amount, created_at in query.all():
        total += 1
        completed = status == PaymentStatus.COMPLETED.value
        amount = Decimal(amount or 0)

        by_status[status]["count"] += 1
        by_status[status]["amount"] += amount

        for bucket in (by_method[method], by_day[created_at.date().isoformat()]):
            bucket["count"] += 1
            if completed:
                bucket["completed"] += 1
                bucket["amount"] += amount

    completed_count = by_status[PaymentStatus.COMPLETED.value]["count"] if total else 0
    return {
        "total_payments": total,
        "completed_amount": str(by_status[PaymentStatus.COMPLETED.value]["amount"]) if total else "0",
        "success_rate": round(completed_count / total * 100, 2) if total else 0.0,
        "by_status": {key: {**value, "amount": str(value["amount"])} for key, value in by_status.items() if value["count"]},
        "by_method": {key: {**value, "amount": str(value["amount"])} for key, value in by_method.items()},
        "by_day": [
            {"date": day, **{**value, "amount": str(value["amount"])}} for day, value in sorted(by_day.items())
        ],
    }


def export_csv(db: Session, **filters) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for entry in _filtered_logs(db, **filters).order_by(PaymentLog.created_at.asc(), PaymentLog.id.asc()):
        writer.writerow(_log_row(entry))
    return buffer.getvalue()
