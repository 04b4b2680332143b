"""Domain event types for verification operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for logging and export
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    VERIFICATION = "verification"
    CALLBACK = "callback"
    MERCHANT_PAYMENT = "merchant_payment"
    HOUSEKEEPING = "housekeeping"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    actor_type: str  # 'client', 'gateway', 'scheduler'
    source_service: str

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor_type: str = "client",
        source_service: str = "verification",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize_dict(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Verification Events
# =============================================================================


@dataclass(frozen=True)
class VerificationStarted(DomainEvent):
    """A session was created and the fee request sent to the gateway."""

    session_id: UUID
    merchant_id: str
    verification_fee: int
    correlation_token: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.VERIFICATION


@dataclass(frozen=True)
class VerificationPaid(DomainEvent):
    """The verification fee settled; the merchant may be disclosed."""

    session_id: UUID
    merchant_id: str
    receipt_reference: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.VERIFICATION


@dataclass(frozen=True)
class VerificationFailed(DomainEvent):
    """The session reached FAILED."""

    session_id: UUID
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.VERIFICATION


# =============================================================================
# Callback Events
# =============================================================================


@dataclass(frozen=True)
class CallbackUnmatched(DomainEvent):
    """A gateway callback matched no session or payment."""

    channel: str
    correlation_token: str
    client_reference: str | None
    result_code: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CALLBACK


# =============================================================================
# Merchant Payment Events
# =============================================================================


@dataclass(frozen=True)
class MerchantPaymentRequested(DomainEvent):
    """The merchant leg was sent to the gateway."""

    session_id: UUID
    merchant_payment_id: UUID
    attempt: int
    amount: Decimal
    destination: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.MERCHANT_PAYMENT


@dataclass(frozen=True)
class MerchantPaymentSettled(DomainEvent):
    """The merchant leg settled and an entitlement was recorded."""

    session_id: UUID
    merchant_payment_id: UUID
    merchant_id: str
    receipt_reference: str
    amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.MERCHANT_PAYMENT


@dataclass(frozen=True)
class MerchantPaymentFailed(DomainEvent):
    """The merchant leg failed; it may be retried."""

    session_id: UUID
    merchant_payment_id: UUID
    attempt: int
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.MERCHANT_PAYMENT


# =============================================================================
# Housekeeping Events
# =============================================================================


@dataclass(frozen=True)
class SessionsExpired(DomainEvent):
    """Stale PENDING sessions were failed by the expiry sweep."""

    session_ids: tuple[UUID, ...]
    cutoff: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.HOUSEKEEPING
