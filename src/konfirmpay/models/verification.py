"""Verification models.

Covers the payment-verification records:
- Verification sessions (one per verify request, append-only)
- Merchant payment attempts (second leg, when chaining is enabled)
- Merchant entitlements (one per settled merchant receipt)
- Callback inbox (every gateway callback received, with its disposition)
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from konfirmpay.models.base import Base, TimestampMixin, utcnow

_STATES = "'PENDING', 'PAID', 'FAILED'"


class VerificationSession(TimestampMixin, Base):
    """One attempt to verify a payer before revealing a merchant.

    Mutated only by conditional updates guarded on state = 'PENDING'.
    """

    __tablename__ = "verification_session"

    session_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    client_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    correlation_token: Mapped[str | None] = mapped_column(String(64))
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payer_contact: Mapped[str] = mapped_column(String(20), nullable=False)
    intended_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    verification_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    receipt_reference: Mapped[str | None] = mapped_column(String(64))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint(f"state IN ({_STATES})", name="verification_session_state_ck"),
        CheckConstraint(
            "(state = 'PAID' AND receipt_reference IS NOT NULL)"
            " OR (state <> 'PAID' AND receipt_reference IS NULL)",
            name="verification_session_receipt_ck",
        ),
        CheckConstraint("verification_fee > 0", name="verification_session_fee_ck"),
        UniqueConstraint("client_reference", name="verification_session_client_ref_uq"),
        UniqueConstraint("correlation_token", name="verification_session_token_uq"),
        UniqueConstraint("receipt_reference", name="verification_session_receipt_uq"),
        Index("verification_session_state_created_ix", "state", "created_at"),
        Index("verification_session_merchant_ix", "merchant_id"),
    )


class MerchantPayment(TimestampMixin, Base):
    """A payment request addressed to a merchant's collection account.

    One row per attempt; a failed attempt may be followed by a retry.
    """

    __tablename__ = "merchant_payment"

    merchant_payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("verification_session.session_id"), nullable=False
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    destination: Mapped[str | None] = mapped_column(String(20))
    payer_contact: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    client_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    correlation_token: Mapped[str | None] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    receipt_reference: Mapped[str | None] = mapped_column(String(64))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint(f"state IN ({_STATES})", name="merchant_payment_state_ck"),
        UniqueConstraint("session_id", "attempt", name="merchant_payment_attempt_uq"),
        UniqueConstraint("client_reference", name="merchant_payment_client_ref_uq"),
        UniqueConstraint("correlation_token", name="merchant_payment_token_uq"),
        UniqueConstraint("receipt_reference", name="merchant_payment_receipt_uq"),
    )


class MerchantEntitlement(TimestampMixin, Base):
    """Proof that a merchant is owed funds for one settled receipt."""

    __tablename__ = "merchant_entitlement"

    receipt_reference: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("verification_session.session_id"), nullable=False
    )
    merchant_payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("merchant_payment.merchant_payment_id")
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="merchant_entitlement_amount_ck"),
        Index("merchant_entitlement_session_ix", "session_id"),
    )


class CallbackInbox(Base):
    """Audit record of a gateway callback and what was done with it."""

    __tablename__ = "callback_inbox"

    callback_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    correlation_token: Mapped[str | None] = mapped_column(String(64))
    result_code: Mapped[str | None] = mapped_column(String(32))
    outcome: Mapped[str | None] = mapped_column(String(16))
    disposition: Mapped[str] = mapped_column(String(16), nullable=False)
    receipt_reference: Mapped[str | None] = mapped_column(String(64))
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        Index("callback_inbox_disposition_ix", "disposition", "received_at"),
    )
