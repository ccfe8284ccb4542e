import enum
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.orm.attributes import get_history

from paygate.database import Base


def utcnow() -> datetime:
    # Naive UTC everywhere; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value}
)


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)
    session_id = Column(String(255), unique=True, nullable=False, index=True)

    order_id = Column(String(255), nullable=False, index=True)
    payment_method = Column(String(50), nullable=False)     # sepay | momo | paypal
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="VND")

    status = Column(String(50), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    transaction_id = Column(String(255), index=True)        # last confirmed gateway transaction
    gateway_reference = Column(String(255), index=True)     # reference issued to the gateway at creation
    gateway_data = Column(JSON, default=dict)
    response_data = Column(JSON)

    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    logs = relationship(
        "PaymentLog",
        back_populates="payment_request",
        cascade="all, delete-orphan",
        order_by="PaymentLog.id",
    )
    webhooks = relationship("PaymentWebhook", back_populates="payment_request", cascade="all, delete-orphan")
    callbacks = relationship("PaymentCallback", back_populates="payment_request", cascade="all, delete-orphan")

    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime = None) -> bool:
        now = now or utcnow()
        return self.expires_at is not None and self.expires_at < now

    def merge_gateway_data(self, **fields) -> None:
        # Reassign so the JSON column is flagged dirty
        self.gateway_data = {**(self.gateway_data or {}), **fields}


class PaymentLog(Base):
    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_request_id = Column(Integer, ForeignKey("payment_requests.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    payment_request = relationship("PaymentRequest", back_populates="logs")


class PaymentWebhook(Base):
    __tablename__ = "payment_webhooks"
    __table_args__ = (Index("ix_payment_webhooks_gateway_webhook", "gateway_name", "webhook_id", unique=True),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Unmatched webhooks keep their raw payload with no owner
    payment_request_id = Column(Integer, ForeignKey("payment_requests.id"), nullable=True, index=True)
    gateway_name = Column(String(50), nullable=False, index=True)
    webhook_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    signature = Column(String(500), nullable=True)
    status = Column(String(50), nullable=False, default="received", index=True)  # received | processed | failed
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    payment_request = relationship("PaymentRequest", back_populates="webhooks")

    def mark_processed(self) -> None:
        self.status = "processed"
        self.processed_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        self.status = "failed"
        self.error_message = error_message


class PaymentCallback(Base):
    __tablename__ = "payment_callbacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_request_id = Column(Integer, ForeignKey("payment_requests.id"), nullable=False, index=True)
    callback_url = Column(String(500), nullable=False)
    payload = Column(JSON, nullable=False)
    signature = Column(String(500), nullable=True)
    status = Column(String(50), nullable=False, default="pending", index=True)  # pending | sent | retrying | exhausted
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    payment_request = relationship("PaymentRequest", back_populates="callbacks")

    def is_sent(self) -> bool:
        return self.status == "sent"

    def mark_sent(self, response_status: int, response_body: str) -> None:
        self.status = "sent"
        self.response_status = response_status
        self.response_body = response_body
        self.sent_at = utcnow()
        self.next_retry_at = None

    def mark_failed(self, response_status: int = None, response_body: str = None) -> None:
        """Record a failed attempt and schedule the next one with exponential backoff."""
        self.retry_count += 1
        self.response_status = response_status
        self.response_body = response_body
        if self.retry_count >= self.max_retries:
            self.status = "exhausted"
            self.next_retry_at = None
        else:
            self.status = "retrying"
            self.next_retry_at = utcnow() + timedelta(minutes=2 ** self.retry_count)


class PaymentTransaction(Base):
    """Verbatim bank-ledger entry, kept whether or not a payment matched."""

    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String(100), nullable=False)
    transaction_date = Column(DateTime, nullable=False)
    account_number = Column(String(100), nullable=True)
    sub_account = Column(String(250), nullable=True)
    amount_in = Column(Numeric(20, 2), nullable=False, default=0)
    amount_out = Column(Numeric(20, 2), nullable=False, default=0)
    accumulated = Column(Numeric(20, 2), nullable=False, default=0)
    code = Column(String(250), nullable=True)
    transaction_content = Column(Text, nullable=True)
    reference_number = Column(String(255), nullable=True, index=True)
    body = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    key = Column(String(255), primary_key=True)
    request_hash = Column(String(64), nullable=False)
    state = Column(String(20), nullable=False, default="in_flight")  # in_flight | completed
    response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


class ImmutableRowError(RuntimeError):
    pass


@event.listens_for(PaymentLog, "before_update")
@event.listens_for(PaymentTransaction, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableRowError(f"{type(target).__name__} rows are append-only")


@event.listens_for(PaymentRequest, "before_update")
def _refuse_amount_change(mapper, connection, target):
    if get_history(target, "amount").has_changes():
        raise ImmutableRowError("payment amount is immutable after creation")
