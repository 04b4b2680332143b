"""Disclosure Gate - reveals a merchant only after verification settles."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from konfirmpay.verification.errors import NotFound, VerificationRequired
from konfirmpay.verification.services.merchant_directory import (
    AsyncMerchantDirectory,
    MerchantDirectory,
    MerchantProfile,
)
from konfirmpay.verification.services.session_store import (
    AsyncSessionStore,
    SessionRecord,
    SessionStore,
)
from konfirmpay.verification.state_machine import SessionStateMachine


@dataclass(frozen=True)
class DisclosureResult:
    """Merchant details released for a PAID session."""

    session_id: UUID
    merchant: MerchantProfile
    intended_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {"merchant": self.merchant.to_dict(), "amount": self.intended_amount}


def _parse_session_id(session_id: UUID | str) -> UUID:
    if isinstance(session_id, UUID):
        return session_id
    try:
        return UUID(str(session_id))
    except ValueError as exc:
        raise NotFound(f"Verification session {session_id} not found") from exc


def _check(session: SessionRecord | None, session_id: UUID) -> SessionRecord:
    if session is None:
        raise NotFound(f"Verification session {session_id} not found")
    if not SessionStateMachine.allows_disclosure(session.state):
        raise VerificationRequired("Verification required")
    return session


def _disclose(session: SessionRecord, profile: MerchantProfile | None) -> DisclosureResult:
    if profile is None:
        raise NotFound(f"Merchant {session.merchant_id} is no longer listed")
    # The amount disclosed is what the payer intends to pay, never the fee.
    return DisclosureResult(
        session_id=session.session_id,
        merchant=profile,
        intended_amount=session.intended_amount,
    )


class DisclosureGate:
    """Answers status queries. Read-only."""

    def __init__(self, store: SessionStore, directory: MerchantDirectory):
        self.store = store
        self.directory = directory

    def get_status(self, session_id: UUID | str) -> DisclosureResult:
        """Return merchant details for a PAID session.

        Raises:
            NotFound: Unknown session id.
            VerificationRequired: Session is PENDING or FAILED.
        """
        sid = _parse_session_id(session_id)
        session = _check(self.store.get(sid), sid)
        return _disclose(session, self.directory.get_profile(session.merchant_id))


class AsyncDisclosureGate:
    """Async version of DisclosureGate."""

    def __init__(self, store: AsyncSessionStore, directory: AsyncMerchantDirectory):
        self.store = store
        self.directory = directory

    async def get_status(self, session_id: UUID | str) -> DisclosureResult:
        sid = _parse_session_id(session_id)
        session = _check(await self.store.get(sid), sid)
        return _disclose(session, await self.directory.get_profile(session.merchant_id))
