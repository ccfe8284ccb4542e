"""
Expiry sweeper::

    python -m paygate.sweeper --once
    python -m paygate.sweeper --interval 60
"""
import argparse
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paygate import lifecycle
from paygate.config import Settings
from paygate.idempotency import IdempotencyLedger
from paygate.models import PaymentRequest, PaymentStatus, utcnow
from paygate.upstream import OrderSystemClient, UpstreamNotifier

logger = structlog.get_logger(__name__)

SWEEP_REASON = "Cancelled by cron job due to expiration"


@dataclass
class SweepResult:
    scanned: int = 0
    cancelled: int = 0
    skipped: int = 0
    notified: int = 0
    notify_failed: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class ExpirySweeper:
    def __init__(self, settings: Settings, ledger: IdempotencyLedger, orders: OrderSystemClient):
        self.settings = settings
        self.ledger = ledger
        self.orders = orders
        self.batch_size = settings.SWEEP_BATCH_SIZE

    def candidates(self, db: Session, now: datetime) -> List[int]:
        rows = (
            db.query(PaymentRequest.id)
            .filter(
                PaymentRequest.status == PaymentStatus.PENDING.value,
                PaymentRequest.expires_at < now,
            )
            .order_by(PaymentRequest.created_at.asc(), PaymentRequest.id.asc())
            .limit(self.batch_size)
            .all()
        )
        return [row.id for row in rows]

    def expire(self, db: Session, payment_pk: int, now: datetime) -> Optional[PaymentRequest]:
        """Cancel one expired payment. Returns it only if this call did the transition."""
        payment = lifecycle.lock_payment(db, id=payment_pk)
        if payment is None or not payment.is_expired(now):
            db.rollback()
            return None

        changed = lifecycle.apply_transition(
            db,
            payment,
            PaymentStatus.CANCELLED,
            gateway_data={
                "cancellation": {
                    "reason": SWEEP_REASON,
                    "cancelled_by": "system",
                    "force": False,
                    "requested_at": now.isoformat(),
                }
            },
            event_data={"reason": SWEEP_REASON, "cancelled_by": "system", "expired": True},
            now=now,
        )
        if not changed:
            db.rollback()
            return None

        self.ledger.invalidate(db, payment.idempotency_key)
        db.commit()
        return payment

    def sweep(self, db: Session, now: datetime = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()

        for payment_pk in self.candidates(db, now):
            result.scanned += 1
            try:
                payment = self.expire(db, payment_pk, now)
            except SQLAlchemyError:
                db.rollback()
                result.errors += 1
                logger.exception("sweep_record_failed", payment_pk=payment_pk)
                continue

            if payment is None:
                result.skipped += 1
                continue

            result.cancelled += 1
            if self.orders.cancel_order(payment.order_id, SWEEP_REASON, payment.idempotency_key):
                result.notified += 1
            else:
                result.notify_failed += 1

        logger.info("sweep_completed", **result.as_dict())
        return result


def run_forever(
    sweeper: ExpirySweeper,
    notifier: UpstreamNotifier,
    session_factory: Callable[[], Session],
    interval_seconds: int,
    once: bool = False,
) -> None:
    while True:
        try:
            with session_factory() as db:
                sweeper.sweep(db)
                notifier.retry_due(db)
        except SQLAlchemyError:
            logger.exception("sweep_run_failed")
            if once:
                raise
        if once:
            return
        time.sleep(interval_seconds)


def main(argv=None) -> None:
    from paygate.config import get_settings
    from paygate.database import SessionLocal, init_db
    from paygate.dependencies import build_services
    from paygate.logs import configure_logging

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Cancel expired pending payments.")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=int, default=settings.SWEEP_INTERVAL_SECONDS, help="seconds between sweeps")
    args = parser.parse_args(argv)

    configure_logging(settings)
    init_db()
    services = build_services(settings)
    logger.info("sweeper_started", interval=args.interval, once=args.once, batch_size=settings.SWEEP_BATCH_SIZE)
    run_forever(services.sweeper, services.notifier, SessionLocal, args.interval, once=args.once)


if __name__ == "__main__":
    main()
