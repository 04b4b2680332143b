"""Housekeeping jobs run from the operations CLI or a scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from konfirmpay.models import utcnow
from konfirmpay.verification.config import VerificationConfig
from konfirmpay.verification.events import EventEmitter, EventMetadata, SessionsExpired
from konfirmpay.verification.services.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiryResult:
    """Records failed by one expiry sweep."""

    cutoff: datetime
    session_ids: tuple[UUID, ...]
    merchant_payment_ids: tuple[UUID, ...]

    @property
    def total(self) -> int:
        return len(self.session_ids) + len(self.merchant_payment_ids)


def expire_stale_sessions(
    store: SessionStore,
    config: VerificationConfig,
    *,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> ExpiryResult:
    """Fail PENDING sessions and merchant attempts older than the TTL.

    Uses the same conditional update as callbacks, so a callback that lands
    first wins and its record is left alone.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=config.pending_ttl_minutes)
    reason = f"expired: no callback within {config.pending_ttl_minutes} minutes"

    session_ids = store.expire_pending(cutoff, reason)
    payment_ids = store.expire_pending_merchant_payments(cutoff, reason)
    store.commit()

    result = ExpiryResult(
        cutoff=cutoff,
        session_ids=tuple(session_ids),
        merchant_payment_ids=tuple(payment_ids),
    )
    if result.total:
        logger.info(
            "Expired %d sessions and %d merchant payments created before %s",
            len(session_ids),
            len(payment_ids),
            cutoff.isoformat(),
        )
    if session_ids and emitter is not None:
        emitter.emit(
            SessionsExpired(
                metadata=EventMetadata.create(actor_type="scheduler", source_service="housekeeping"),
                session_ids=result.session_ids,
                cutoff=cutoff,
            )
        )
    return result
