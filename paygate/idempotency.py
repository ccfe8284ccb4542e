from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paygate.config import Settings
from paygate.errors import IdempotencyConflict, IdempotencyInProgress
from paygate.models import IdempotencyRecord, utcnow
from paygate.signatures import payload_hash

logger = structlog.get_logger(__name__)

IN_FLIGHT = "in_flight"
COMPLETED = "completed"


@dataclass(frozen=True)
class Admission:
    is_new: bool
    cached_result: Optional[dict] = None


class IdempotencyLedger:
    def __init__(self, settings: Settings):
        self.ttl = timedelta(minutes=settings.IDEMPOTENCY_TTL_MINUTES)

    def admit(self, db: Session, key: str, payload: Mapping[str, Any], now: datetime = None) -> Admission:
        """
        Reserve ``key`` for ``payload`` or replay what was stored for it.

        The reservation is committed immediately so a concurrent duplicate
        observes it. Raises IdempotencyConflict when the key was used with a
        different payload and IdempotencyInProgress when the first request
        has not produced a result yet.
        """
        now = now or utcnow()
        request_hash = payload_hash(payload)

        record = db.get(IdempotencyRecord, key, with_for_update=True)
        if record is not None and record.expires_at <= now:
            logger.info("idempotency_entry_expired", idempotency_key=key)
            db.delete(record)
            db.flush()
            record = None

        if record is None:
            db.add(
                IdempotencyRecord(
                    key=key,
                    request_hash=request_hash,
                    state=IN_FLIGHT,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
            )
            try:
                db.commit()
                return Admission(is_new=True)
            except IntegrityError:
                # Lost the race; the winner's row decides
                db.rollback()
                record = db.get(IdempotencyRecord, key)
                if record is None:
                    raise IdempotencyInProgress(f"idempotency key {key} is being reserved concurrently")

        if record.request_hash != request_hash:
            logger.warning(
                "idempotency_conflict",
                idempotency_key=key,
                stored_hash=record.request_hash,
                request_hash=request_hash,
            )
            raise IdempotencyConflict(f"idempotency key {key} was used with a different payload")

        if record.state == COMPLETED and record.response is not None:
            logger.info("idempotency_replay", idempotency_key=key)
            return Admission(is_new=False, cached_result=dict(record.response))

        raise IdempotencyInProgress(f"request for idempotency key {key} is still in flight")

    def commit(self, db: Session, key: str, result: Mapping[str, Any]) -> None:
        """Attach the final response to the reservation. Caller commits."""
        record = db.get(IdempotencyRecord, key)
        if record is None:
            logger.warning("idempotency_commit_without_reservation", idempotency_key=key)
            return
        record.state = COMPLETED
        record.response = dict(result)

    def invalidate(self, db: Session, key: str) -> bool:
        """Forget ``key`` so the next request with it is treated as new input. Caller commits."""
        record = db.get(IdempotencyRecord, key)
        if record is None:
            return False
        db.delete(record)
        logger.info("idempotency_entry_invalidated", idempotency_key=key)
        return True
