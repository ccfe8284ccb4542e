"""
Webhook reconciliation. Matching stops at the first hit: gateway reference,
then order id, then the order id the adapter recovers from its own reference
format.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate import lifecycle
from paygate.config import Settings
from paygate.errors import InvalidSignature, UnmatchedWebhook
from paygate.gateways import GatewayAdapter, GatewayRegistry, NormalizedWebhook, to_decimal
from paygate.models import PaymentRequest, PaymentStatus, PaymentTransaction, PaymentWebhook, utcnow
from paygate.upstream import UpstreamNotifier

logger = structlog.get_logger(__name__)

BANK_ENTRY_FIELDS = ("referenceCode", "transferAmount", "transferType")

MATCH_REFERENCE = "transaction_id"
MATCH_ORDER_ID = "order_id"
MATCH_EXTRACTED = "extracted_order_id"


@dataclass
class ReconcileOutcome:
    provider: str
    webhook_id: str
    matched: bool = False
    matched_by: Optional[str] = None
    payment_id: Optional[str] = None
    transitioned: bool = False
    duplicate: bool = False
    status: Optional[str] = None


def looks_like_bank_entry(payload: Mapping[str, Any]) -> bool:
    return any(payload.get(name) is not None for name in BANK_ENTRY_FIELDS)


def _parse_transaction_date(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning("bank_tx_date_unparsed", value=value)
    return utcnow()


class Reconciler:
    def __init__(self, settings: Settings, gateways: GatewayRegistry, notifier: UpstreamNotifier):
        self.settings = settings
        self.gateways = gateways
        self.notifier = notifier

    def reconcile(
        self,
        db: Session,
        provider: str,
        raw: Mapping[str, Any],
        signature: Optional[str] = None,
    ) -> ReconcileOutcome:
        adapter = self.gateways.get(provider)
        self._check_signature(adapter, raw, signature)

        webhook = adapter.normalize_webhook(raw)
        log = logger.bind(provider=adapter.name, webhook_id=webhook.webhook_id)
        outcome = ReconcileOutcome(provider=adapter.name, webhook_id=webhook.webhook_id)

        record, first_delivery = self._record_webhook(db, adapter, webhook, signature or adapter.embedded_signature(raw))
        bank_tx = None
        if first_delivery and looks_like_bank_entry(webhook.raw_payload):
            bank_tx = self._log_bank_transaction(db, adapter, webhook)
        db.commit()

        try:
            payment, matched_by = self._match(db, adapter, webhook)
        except UnmatchedWebhook as exc:
            record.mark_failed(exc.detail)
            db.commit()
            log.warning(
                "webhook_unmatched",
                transaction_id=webhook.transaction_id,
                merchant_reference=webhook.merchant_reference,
                order_id=webhook.order_id,
                raw_payload=webhook.raw_payload,
            )
            return outcome

        # Re-read under lock; a concurrent trigger may have moved it
        payment = lifecycle.lock_payment(db, id=payment.id)
        outcome.matched = True
        outcome.matched_by = matched_by
        outcome.payment_id = payment.idempotency_key
        log = log.bind(payment_id=payment.idempotency_key, matched_by=matched_by)

        record.payment_request = payment
        lifecycle.record_event(
            db,
            payment,
            lifecycle.WEBHOOK_RECEIVED,
            {
                "provider": adapter.name,
                "webhook_id": webhook.webhook_id,
                "event_type": webhook.event_type,
                "transaction_id": webhook.transaction_id,
                "matched_by": matched_by,
                "delivery": record.retry_count + 1,
            },
            gateway_response=webhook.raw_payload,
        )
        if bank_tx is not None:
            lifecycle.record_event(
                db,
                payment,
                lifecycle.BANK_TX_LOGGED,
                {"reference_number": bank_tx.reference_number, "amount_in": str(bank_tx.amount_in)},
            )

        if webhook.status is None:
            record.mark_processed()
            db.commit()
            outcome.status = payment.status
            log.info("webhook_informational", event_type=webhook.event_type)
            return outcome

        if payment.is_terminal():
            lifecycle.record_event(
                db,
                payment,
                lifecycle.DUPLICATE_WEBHOOK,
                {
                    "current_status": payment.status,
                    "webhook_status": webhook.status,
                    "transaction_id": webhook.transaction_id,
                    "webhook_id": webhook.webhook_id,
                },
            )
            record.mark_processed()
            db.commit()
            outcome.duplicate = True
            outcome.status = payment.status
            log.info("duplicate_webhook", current_status=payment.status)
            return outcome

        outcome.transitioned = self._apply(db, payment, webhook, matched_by, log)
        record.mark_processed()
        db.commit()
        outcome.status = payment.status

        if outcome.transitioned:
            self.notifier.notify_safely(db, payment)
        return outcome

    def _check_signature(self, adapter: GatewayAdapter, raw: Mapping[str, Any], signature: Optional[str]) -> None:
        if adapter.name in self.settings.UNSIGNED_WEBHOOK_PROVIDERS:
            logger.warning("webhook_signature_skipped", provider=adapter.name)
            return
        signature = signature or adapter.embedded_signature(raw)
        if not signature:
            logger.warning("webhook_signature_missing", provider=adapter.name)
            raise InvalidSignature(f"{adapter.name} webhook carries no signature")
        if not adapter.verify_signature(raw, signature):
            logger.warning("webhook_signature_mismatch", provider=adapter.name)
            raise InvalidSignature(f"{adapter.name} webhook signature mismatch")

    def _find_webhook(self, db: Session, provider: str, webhook_id: str) -> Optional[PaymentWebhook]:
        return (
            db.query(PaymentWebhook)
            .filter_by(gateway_name=provider, webhook_id=webhook_id)
            .with_for_update()
            .first()
        )

    def _record_webhook(
        self, db: Session, adapter: GatewayAdapter, webhook: NormalizedWebhook, signature: Optional[str]
    ) -> Tuple[PaymentWebhook, bool]:
        record = self._find_webhook(db, adapter.name, webhook.webhook_id)
        if record is None:
            record = PaymentWebhook(
                gateway_name=adapter.name,
                webhook_id=webhook.webhook_id,
                event_type=webhook.event_type or "unknown",
                payload=webhook.raw_payload,
                signature=signature,
                status="received",
                retry_count=0,
            )
            db.add(record)
            try:
                db.flush()
                return record, True
            except IntegrityError:
                # A concurrent first delivery inserted it
                db.rollback()
                record = self._find_webhook(db, adapter.name, webhook.webhook_id)

        record.retry_count += 1
        record.status = "received"
        record.error_message = None
        logger.info("webhook_redelivered", provider=adapter.name, webhook_id=webhook.webhook_id, retry_count=record.retry_count)
        return record, False

    def _log_bank_transaction(self, db: Session, adapter: GatewayAdapter, webhook: NormalizedWebhook) -> PaymentTransaction:
        payload = webhook.raw_payload
        amount = to_decimal(payload.get("transferAmount")) or 0
        incoming = (payload.get("transferType") or "in").lower() == "in"
        entry = PaymentTransaction(
            gateway=payload.get("gateway") or adapter.name,
            transaction_date=_parse_transaction_date(payload.get("transactionDate")),
            account_number=payload.get("accountNumber"),
            sub_account=payload.get("subAccount"),
            amount_in=amount if incoming else 0,
            amount_out=0 if incoming else amount,
            accumulated=to_decimal(payload.get("accumulated")) or 0,
            code=payload.get("code"),
            transaction_content=payload.get("content") or payload.get("description"),
            reference_number=payload.get("referenceCode"),
            body=payload,
        )
        db.add(entry)
        logger.info("bank_tx_logged", reference_number=entry.reference_number, amount=str(amount), incoming=incoming)
        return entry

    def _match(self, db: Session, adapter: GatewayAdapter, webhook: NormalizedWebhook) -> Tuple[PaymentRequest, str]:
        references = [ref for ref in (webhook.transaction_id, webhook.merchant_reference) if ref]
        if references:
            payment = (
                db.query(PaymentRequest)
                .filter(
                    or_(
                        PaymentRequest.transaction_id.in_(references),
                        PaymentRequest.gateway_reference.in_(references),
                    )
                )
                .order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
                .first()
            )
            if payment is not None:
                return payment, MATCH_REFERENCE

        if webhook.order_id:
            payment = self._newest_for_order(db, adapter, str(webhook.order_id))
            if payment is not None:
                return payment, MATCH_ORDER_ID

        extracted = adapter.extract_order_id(webhook)
        if extracted:
            payment = self._newest_for_order(db, adapter, extracted, ignore_case=True)
            if payment is not None:
                return payment, MATCH_EXTRACTED

        raise UnmatchedWebhook(f"no payment matches {adapter.name} webhook {webhook.webhook_id}")

    def _newest_for_order(
        self, db: Session, adapter: GatewayAdapter, order_id: str, ignore_case: bool = False
    ) -> Optional[PaymentRequest]:
        """Newest pending attempt for the order, else the newest attempt of any status."""
        column = func.lower(PaymentRequest.order_id) if ignore_case else PaymentRequest.order_id
        value = order_id.lower() if ignore_case else order_id
        query = db.query(PaymentRequest).filter(
            column == value,
            PaymentRequest.payment_method == adapter.name,
        )
        newest_first = (PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
        pending = query.filter(PaymentRequest.status == PaymentStatus.PENDING.value).order_by(*newest_first).first()
        return pending or query.order_by(*newest_first).first()

    def _apply(self, db: Session, payment: PaymentRequest, webhook: NormalizedWebhook, matched_by: str, log) -> bool:
        gateway_data = {"last_webhook_id": webhook.webhook_id}
        event_data = {"provider": webhook.provider, "webhook_id": webhook.webhook_id, "matched_by": matched_by}

        same_currency = not webhook.currency or webhook.currency.upper() == (payment.currency or "").upper()
        if webhook.amount is not None and same_currency and webhook.amount != payment.amount:
            # Logged and recorded, never blocking
            mismatch = {"expected": str(payment.amount), "received": str(webhook.amount)}
            log.warning("webhook_amount_mismatch", **mismatch)
            gateway_data["amount_mismatch"] = mismatch
            event_data["amount_mismatch"] = mismatch

        if payment.is_expired():
            gateway_data["late_confirmation"] = True
            event_data["late_confirmation"] = True
            log.warning("webhook_after_expiry", expires_at=payment.expires_at.isoformat())

        if webhook.status == PaymentStatus.FAILED.value:
            gateway_data["failure_reason"] = (
                webhook.raw_payload.get("message") or f"{webhook.provider} reported {webhook.event_type}"
            )

        return lifecycle.apply_transition(
            db,
            payment,
            webhook.status,
            transaction_id=webhook.transaction_id,
            gateway_response=webhook.raw_payload,
            gateway_data=gateway_data,
            event_data=event_data,
        )
