"""Session Store - durable verification sessions and merchant entitlements.

The store is the only source of truth. It provides:
- Session creation and lookup (by id, correlation token, client reference)
- Terminal transitions as single conditional updates
  (``UPDATE ... WHERE state = 'PENDING' RETURNING``), never read-modify-write
- Merchant payment attempts with the same guarded transitions
- Insert-if-absent entitlements keyed by the unique receipt
- A callback inbox for audit and anomaly reporting

Statements are built once and executed by either a sync ``Session`` or an
``AsyncSession``. The store never commits; callers own the transaction.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Table, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import Executable

from konfirmpay.models import (
    CallbackInbox,
    MerchantEntitlement,
    MerchantPayment,
    VerificationSession,
    utcnow,
)
from konfirmpay.verification.callbacks import GatewayCallback
from konfirmpay.verification.errors import PersistenceError
from konfirmpay.verification.state_machine import SessionState

sessions: Table = VerificationSession.__table__  # type: ignore[assignment]
merchant_payments: Table = MerchantPayment.__table__  # type: ignore[assignment]
entitlements: Table = MerchantEntitlement.__table__  # type: ignore[assignment]
inbox: Table = CallbackInbox.__table__  # type: ignore[assignment]


class DuplicateReceipt(Exception):
    """A receipt already belongs to another session or payment."""

    def __init__(self, receipt_reference: str):
        self.receipt_reference = receipt_reference
        super().__init__(f"Receipt {receipt_reference} is already recorded")


@dataclass(frozen=True)
class SessionRecord:
    """Snapshot of a verification session row."""

    session_id: UUID
    client_reference: str
    correlation_token: str | None
    merchant_id: str
    payer_contact: str
    intended_amount: Decimal
    verification_fee: int
    state: str
    receipt_reference: str | None
    failure_reason: str | None
    created_at: datetime
    resolved_at: datetime | None

    @classmethod
    def from_row(cls, row: Any) -> SessionRecord:
        return cls(
            session_id=row["session_id"],
            client_reference=row["client_reference"],
            correlation_token=row["correlation_token"],
            merchant_id=row["merchant_id"],
            payer_contact=row["payer_contact"],
            intended_amount=Decimal(str(row["intended_amount"])),
            verification_fee=int(row["verification_fee"]),
            state=row["state"],
            receipt_reference=row["receipt_reference"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )

    @property
    def is_terminal(self) -> bool:
        return self.state != SessionState.PENDING


@dataclass(frozen=True)
class MerchantPaymentRecord:
    """Snapshot of a merchant payment attempt row."""

    merchant_payment_id: UUID
    session_id: UUID
    attempt: int
    merchant_id: str
    destination: str | None
    payer_contact: str
    amount: Decimal
    client_reference: str
    correlation_token: str | None
    state: str
    receipt_reference: str | None
    failure_reason: str | None
    created_at: datetime
    resolved_at: datetime | None

    @classmethod
    def from_row(cls, row: Any) -> MerchantPaymentRecord:
        return cls(
            merchant_payment_id=row["merchant_payment_id"],
            session_id=row["session_id"],
            attempt=int(row["attempt"]),
            merchant_id=row["merchant_id"],
            destination=row["destination"],
            payer_contact=row["payer_contact"],
            amount=Decimal(str(row["amount"])),
            client_reference=row["client_reference"],
            correlation_token=row["correlation_token"],
            state=row["state"],
            receipt_reference=row["receipt_reference"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )


@contextmanager
def _persistence(action: str) -> Iterator[None]:
    """Translate driver failures into PersistenceError.

    IntegrityError passes through; callers give it domain meaning.
    """
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not {action}: {exc.__class__.__name__}") from exc


def _insert_if_absent(dialect: str, table: Table, index_elements: list[str]) -> Any:
    """INSERT ... ON CONFLICT DO NOTHING for the supported dialects."""
    if dialect == "postgresql":
        return postgresql.insert(table).on_conflict_do_nothing(index_elements=index_elements)
    if dialect == "sqlite":
        return sqlite.insert(table).on_conflict_do_nothing(index_elements=index_elements)
    raise NotImplementedError(f"Idempotent insert not supported on {dialect}")


# =============================================================================
# Statements
# =============================================================================


def _create_session_values(
    *,
    merchant_id: str,
    payer_contact: str,
    intended_amount: Decimal,
    verification_fee: int,
    session_id: UUID | None,
) -> dict[str, Any]:
    sid = session_id or uuid4()
    return {
        "session_id": sid,
        "client_reference": str(sid),
        "correlation_token": None,
        "merchant_id": merchant_id,
        "payer_contact": payer_contact,
        "intended_amount": intended_amount,
        "verification_fee": verification_fee,
        "state": SessionState.PENDING.value,
        "receipt_reference": None,
        "failure_reason": None,
        "created_at": utcnow(),
        "resolved_at": None,
    }


def _attach_token_stmt(table: Table, key_column: str, key: Any, token: str) -> Executable:
    return (
        update(table)
        .where(table.c[key_column] == key, table.c.correlation_token.is_(None))
        .values(correlation_token=token)
    )


def _resolve_stmt(
    table: Table,
    key_column: str,
    key: Any,
    to_state: SessionState,
    *,
    receipt_reference: str | None = None,
    failure_reason: str | None = None,
    resolved_at: datetime | None = None,
) -> Executable:
    """Conditional PENDING -> terminal transition, returning the new row."""
    values: dict[str, Any] = {
        "state": to_state.value,
        "resolved_at": resolved_at or utcnow(),
    }
    if to_state == SessionState.PAID:
        values["receipt_reference"] = receipt_reference
    else:
        values["failure_reason"] = failure_reason
    return (
        update(table)
        .where(table.c[key_column] == key, table.c.state == SessionState.PENDING.value)
        .values(**values)
        .returning(*table.c)
    )


def _expire_stmt(
    table: Table,
    key_column: str,
    cutoff: datetime,
    reason: str,
    resolved_at: datetime,
) -> Executable:
    return (
        update(table)
        .where(table.c.state == SessionState.PENDING.value, table.c.created_at < cutoff)
        .values(
            state=SessionState.FAILED.value,
            failure_reason=reason,
            resolved_at=resolved_at,
        )
        .returning(table.c[key_column])
    )


def _inbox_values(
    channel: str,
    disposition: str,
    payload: Any,
    callback: GatewayCallback | None,
) -> dict[str, Any]:
    return {
        "callback_id": uuid4(),
        "channel": channel,
        "correlation_token": callback.correlation_token if callback else None,
        "result_code": callback.result_code if callback else None,
        "outcome": callback.outcome.value if callback else None,
        "disposition": disposition,
        "receipt_reference": callback.receipt_reference if callback else None,
        "payload_json": payload if isinstance(payload, dict) else {"raw": repr(payload)},
        "received_at": utcnow(),
    }


def _latest_attempt_stmt(session_id: UUID) -> Executable:
    return (
        select(merchant_payments)
        .where(merchant_payments.c.session_id == session_id)
        .order_by(merchant_payments.c.attempt.desc())
        .limit(1)
    )


# =============================================================================
# Sync store
# =============================================================================


class SessionStore:
    """Verification session store over a synchronous SQLAlchemy Session."""

    def __init__(self, db: Session):
        self.db = db

    @property
    def dialect(self) -> str:
        return self.db.get_bind().dialect.name

    def commit(self) -> None:
        with _persistence("commit"):
            self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # -- sessions -------------------------------------------------------------

    def create_session(
        self,
        *,
        merchant_id: str,
        payer_contact: str,
        intended_amount: Decimal,
        verification_fee: int,
        session_id: UUID | None = None,
    ) -> SessionRecord:
        """Insert a new PENDING session."""
        values = _create_session_values(
            merchant_id=merchant_id,
            payer_contact=payer_contact,
            intended_amount=intended_amount,
            verification_fee=verification_fee,
            session_id=session_id,
        )
        with _persistence("create verification session"):
            self.db.execute(insert(sessions).values(**values))
        return SessionRecord.from_row(values)

    def attach_correlation_token(self, session_id: UUID, token: str) -> bool:
        """Record the gateway token once; returns False if already set."""
        with _persistence("attach correlation token"):
            result = self.db.execute(_attach_token_stmt(sessions, "session_id", session_id, token))
        return result.rowcount > 0

    def get(self, session_id: UUID) -> SessionRecord | None:
        with _persistence("read verification session"):
            row = self.db.execute(
                select(sessions).where(sessions.c.session_id == session_id)
            ).mappings().first()
        return SessionRecord.from_row(row) if row else None

    def find_by_correlation_token(self, token: str) -> SessionRecord | None:
        with _persistence("read verification session"):
            row = self.db.execute(
                select(sessions).where(sessions.c.correlation_token == token)
            ).mappings().first()
        return SessionRecord.from_row(row) if row else None

    def find_by_client_reference(self, reference: str) -> SessionRecord | None:
        with _persistence("read verification session"):
            row = self.db.execute(
                select(sessions).where(sessions.c.client_reference == reference)
            ).mappings().first()
        return SessionRecord.from_row(row) if row else None

    def find_for_callback(
        self,
        correlation_token: str,
        client_reference: str | None,
    ) -> SessionRecord | None:
        """Match by correlation token, falling back to the echoed reference."""
        record = self.find_by_correlation_token(correlation_token)
        if record is None and client_reference:
            record = self.find_by_client_reference(client_reference)
        return record

    def mark_paid(
        self,
        session_id: UUID,
        receipt_reference: str,
        resolved_at: datetime | None = None,
    ) -> SessionRecord | None:
        """PENDING -> PAID. Returns the new row, or None if not PENDING.

        Raises:
            DuplicateReceipt: Receipt already belongs to another session.
        """
        stmt = _resolve_stmt(
            sessions,
            "session_id",
            session_id,
            SessionState.PAID,
            receipt_reference=receipt_reference,
            resolved_at=resolved_at,
        )
        try:
            with _persistence("mark session paid"):
                row = self.db.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise DuplicateReceipt(receipt_reference) from exc
        return SessionRecord.from_row(row) if row else None

    def mark_failed(
        self,
        session_id: UUID,
        reason: str,
        resolved_at: datetime | None = None,
    ) -> SessionRecord | None:
        """PENDING -> FAILED. Returns the new row, or None if not PENDING."""
        stmt = _resolve_stmt(
            sessions,
            "session_id",
            session_id,
            SessionState.FAILED,
            failure_reason=reason,
            resolved_at=resolved_at,
        )
        with _persistence("mark session failed"):
            row = self.db.execute(stmt).mappings().first()
        return SessionRecord.from_row(row) if row else None

    def expire_pending(self, cutoff: datetime, reason: str = "expired") -> list[UUID]:
        """Fail every session still PENDING that was created before cutoff."""
        with _persistence("expire pending sessions"):
            rows = self.db.execute(
                _expire_stmt(sessions, "session_id", cutoff, reason, utcnow())
            ).fetchall()
        return [row[0] for row in rows]

    def count_by_state(self) -> dict[str, int]:
        with _persistence("count sessions"):
            rows = self.db.execute(
                select(sessions.c.state, func.count()).group_by(sessions.c.state)
            ).fetchall()
        return {state: int(count) for state, count in rows}

    # -- merchant payments ----------------------------------------------------

    def create_merchant_payment(
        self,
        *,
        session: SessionRecord,
        attempt: int,
        destination: str | None,
    ) -> MerchantPaymentRecord | None:
        """Insert a merchant payment attempt; None if that attempt exists."""
        values = {
            "merchant_payment_id": uuid4(),
            "session_id": session.session_id,
            "attempt": attempt,
            "merchant_id": session.merchant_id,
            "destination": destination,
            "payer_contact": session.payer_contact,
            "amount": session.intended_amount,
            "state": SessionState.PENDING.value,
            "created_at": utcnow(),
        }
        values["client_reference"] = f"MP-{values['merchant_payment_id']}"
        stmt = (
            _insert_if_absent(self.dialect, merchant_payments, ["session_id", "attempt"])
            .values(**values)
            .returning(*merchant_payments.c)
        )
        with _persistence("create merchant payment"):
            row = self.db.execute(stmt).mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    def attach_merchant_payment_token(self, merchant_payment_id: UUID, token: str) -> bool:
        stmt = _attach_token_stmt(merchant_payments, "merchant_payment_id", merchant_payment_id, token)
        with _persistence("attach merchant payment token"):
            result = self.db.execute(stmt)
        return result.rowcount > 0

    def get_merchant_payment(self, merchant_payment_id: UUID) -> MerchantPaymentRecord | None:
        with _persistence("read merchant payment"):
            row = self.db.execute(
                select(merchant_payments).where(
                    merchant_payments.c.merchant_payment_id == merchant_payment_id
                )
            ).mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    def latest_merchant_payment(self, session_id: UUID) -> MerchantPaymentRecord | None:
        with _persistence("read merchant payment"):
            row = self.db.execute(_latest_attempt_stmt(session_id)).mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    def expire_pending_merchant_payments(
        self,
        cutoff: datetime,
        reason: str = "expired",
    ) -> list[UUID]:
        """Fail merchant payment attempts still PENDING before cutoff."""
        stmt = _expire_stmt(merchant_payments, "merchant_payment_id", cutoff, reason, utcnow())
        with _persistence("expire pending merchant payments"):
            rows = self.db.execute(stmt).fetchall()
        return [row[0] for row in rows]

    def count_merchant_payments_by_state(self) -> dict[str, int]:
        with _persistence("count merchant payments"):
            rows = self.db.execute(
                select(merchant_payments.c.state, func.count()).group_by(merchant_payments.c.state)
            ).fetchall()
        return {state: int(count) for state, count in rows}

    def count_stale_pending(self, cutoff: datetime) -> int:
        """Sessions still PENDING that were created before cutoff."""
        with _persistence("count stale sessions"):
            value = self.db.execute(
                select(func.count())
                .select_from(sessions)
                .where(sessions.c.state == SessionState.PENDING.value, sessions.c.created_at < cutoff)
            ).scalar_one()
        return int(value)

    def count_entitlements(self) -> int:
        with _persistence("count entitlements"):
            value = self.db.execute(select(func.count()).select_from(entitlements)).scalar_one()
        return int(value)

    def count_callbacks_by_disposition(self) -> dict[str, int]:
        with _persistence("count callbacks"):
            rows = self.db.execute(
                select(inbox.c.disposition, func.count()).group_by(inbox.c.disposition)
            ).fetchall()
        return {disposition: int(count) for disposition, count in rows}

    def find_merchant_payment_for_callback(
        self,
        correlation_token: str,
        client_reference: str | None,
    ) -> MerchantPaymentRecord | None:
        """Match by correlation token, falling back to the echoed reference."""
        with _persistence("read merchant payment"):
            row = self.db.execute(
                select(merchant_payments).where(
                    merchant_payments.c.correlation_token == correlation_token
                )
            ).mappings().first()
            if row is None and client_reference:
                row = self.db.execute(
                    select(merchant_payments).where(
                        merchant_payments.c.client_reference == client_reference
                    )
                ).mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    def mark_merchant_payment_paid(
        self,
        merchant_payment_id: UUID,
        receipt_reference: str,
    ) -> MerchantPaymentRecord | None:
        stmt = _resolve_stmt(
            merchant_payments,
            "merchant_payment_id",
            merchant_payment_id,
            SessionState.PAID,
            receipt_reference=receipt_reference,
        )
        try:
            with _persistence("mark merchant payment paid"):
                row = self.db.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise DuplicateReceipt(receipt_reference) from exc
        return MerchantPaymentRecord.from_row(row) if row else None

    def mark_merchant_payment_failed(
        self,
        merchant_payment_id: UUID,
        reason: str,
    ) -> MerchantPaymentRecord | None:
        stmt = _resolve_stmt(
            merchant_payments,
            "merchant_payment_id",
            merchant_payment_id,
            SessionState.FAILED,
            failure_reason=reason,
        )
        with _persistence("mark merchant payment failed"):
            row = self.db.execute(stmt).mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    # -- entitlements ---------------------------------------------------------

    def insert_entitlement_if_absent(
        self,
        *,
        receipt_reference: str,
        merchant_id: str,
        session_id: UUID,
        amount: Decimal,
        merchant_payment_id: UUID | None = None,
    ) -> bool:
        """Insert one entitlement per receipt. True if newly created."""
        stmt = (
            _insert_if_absent(self.dialect, entitlements, ["receipt_reference"])
            .values(
                receipt_reference=receipt_reference,
                merchant_id=merchant_id,
                session_id=session_id,
                merchant_payment_id=merchant_payment_id,
                amount=amount,
                created_at=utcnow(),
            )
            .returning(entitlements.c.receipt_reference)
        )
        with _persistence("record entitlement"):
            row = self.db.execute(stmt).first()
        return row is not None

    def entitlements_for_session(self, session_id: UUID) -> list[dict[str, Any]]:
        with _persistence("read entitlements"):
            rows = self.db.execute(
                select(entitlements).where(entitlements.c.session_id == session_id)
            ).mappings().all()
        return [dict(row) for row in rows]

    # -- callback inbox -------------------------------------------------------

    def record_callback(
        self,
        *,
        channel: str,
        disposition: str,
        payload: Any,
        callback: GatewayCallback | None = None,
    ) -> None:
        with _persistence("record callback"):
            self.db.execute(insert(inbox).values(**_inbox_values(channel, disposition, payload, callback)))

    def callbacks_with_disposition(self, disposition: str, limit: int = 100) -> list[dict[str, Any]]:
        with _persistence("read callbacks"):
            rows = self.db.execute(
                select(inbox)
                .where(inbox.c.disposition == disposition)
                .order_by(inbox.c.received_at.desc())
                .limit(limit)
            ).mappings().all()
        return [dict(row) for row in rows]


# =============================================================================
# Async store
# =============================================================================


class AsyncSessionStore:
    """Async version of SessionStore."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def dialect(self) -> str:
        return self.db.get_bind().dialect.name

    async def commit(self) -> None:
        with _persistence("commit"):
            await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def create_session(
        self,
        *,
        merchant_id: str,
        payer_contact: str,
        intended_amount: Decimal,
        verification_fee: int,
        session_id: UUID | None = None,
    ) -> SessionRecord:
        values = _create_session_values(
            merchant_id=merchant_id,
            payer_contact=payer_contact,
            intended_amount=intended_amount,
            verification_fee=verification_fee,
            session_id=session_id,
        )
        with _persistence("create verification session"):
            await self.db.execute(insert(sessions).values(**values))
        return SessionRecord.from_row(values)

    async def attach_correlation_token(self, session_id: UUID, token: str) -> bool:
        with _persistence("attach correlation token"):
            result = await self.db.execute(
                _attach_token_stmt(sessions, "session_id", session_id, token)
            )
        return result.rowcount > 0

    async def get(self, session_id: UUID) -> SessionRecord | None:
        with _persistence("read verification session"):
            result = await self.db.execute(
                select(sessions).where(sessions.c.session_id == session_id)
            )
            row = result.mappings().first()
        return SessionRecord.from_row(row) if row else None

    async def find_for_callback(
        self,
        correlation_token: str,
        client_reference: str | None,
    ) -> SessionRecord | None:
        with _persistence("read verification session"):
            result = await self.db.execute(
                select(sessions).where(sessions.c.correlation_token == correlation_token)
            )
            row = result.mappings().first()
            if row is None and client_reference:
                result = await self.db.execute(
                    select(sessions).where(sessions.c.client_reference == client_reference)
                )
                row = result.mappings().first()
        return SessionRecord.from_row(row) if row else None

    async def mark_paid(
        self,
        session_id: UUID,
        receipt_reference: str,
        resolved_at: datetime | None = None,
    ) -> SessionRecord | None:
        stmt = _resolve_stmt(
            sessions,
            "session_id",
            session_id,
            SessionState.PAID,
            receipt_reference=receipt_reference,
            resolved_at=resolved_at,
        )
        try:
            with _persistence("mark session paid"):
                result = await self.db.execute(stmt)
                row = result.mappings().first()
        except IntegrityError as exc:
            raise DuplicateReceipt(receipt_reference) from exc
        return SessionRecord.from_row(row) if row else None

    async def mark_failed(
        self,
        session_id: UUID,
        reason: str,
        resolved_at: datetime | None = None,
    ) -> SessionRecord | None:
        stmt = _resolve_stmt(
            sessions,
            "session_id",
            session_id,
            SessionState.FAILED,
            failure_reason=reason,
            resolved_at=resolved_at,
        )
        with _persistence("mark session failed"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
        return SessionRecord.from_row(row) if row else None

    async def create_merchant_payment(
        self,
        *,
        session: SessionRecord,
        attempt: int,
        destination: str | None,
    ) -> MerchantPaymentRecord | None:
        values = {
            "merchant_payment_id": uuid4(),
            "session_id": session.session_id,
            "attempt": attempt,
            "merchant_id": session.merchant_id,
            "destination": destination,
            "payer_contact": session.payer_contact,
            "amount": session.intended_amount,
            "state": SessionState.PENDING.value,
            "created_at": utcnow(),
        }
        values["client_reference"] = f"MP-{values['merchant_payment_id']}"
        stmt = (
            _insert_if_absent(self.dialect, merchant_payments, ["session_id", "attempt"])
            .values(**values)
            .returning(*merchant_payments.c)
        )
        with _persistence("create merchant payment"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    async def attach_merchant_payment_token(self, merchant_payment_id: UUID, token: str) -> bool:
        stmt = _attach_token_stmt(merchant_payments, "merchant_payment_id", merchant_payment_id, token)
        with _persistence("attach merchant payment token"):
            result = await self.db.execute(stmt)
        return result.rowcount > 0

    async def get_merchant_payment(self, merchant_payment_id: UUID) -> MerchantPaymentRecord | None:
        with _persistence("read merchant payment"):
            result = await self.db.execute(
                select(merchant_payments).where(
                    merchant_payments.c.merchant_payment_id == merchant_payment_id
                )
            )
            row = result.mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    async def latest_merchant_payment(self, session_id: UUID) -> MerchantPaymentRecord | None:
        with _persistence("read merchant payment"):
            result = await self.db.execute(_latest_attempt_stmt(session_id))
            row = result.mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    async def find_merchant_payment_for_callback(
        self,
        correlation_token: str,
        client_reference: str | None,
    ) -> MerchantPaymentRecord | None:
        with _persistence("read merchant payment"):
            result = await self.db.execute(
                select(merchant_payments).where(
                    merchant_payments.c.correlation_token == correlation_token
                )
            )
            row = result.mappings().first()
            if row is None and client_reference:
                result = await self.db.execute(
                    select(merchant_payments).where(
                        merchant_payments.c.client_reference == client_reference
                    )
                )
                row = result.mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    async def mark_merchant_payment_paid(
        self,
        merchant_payment_id: UUID,
        receipt_reference: str,
    ) -> MerchantPaymentRecord | None:
        stmt = _resolve_stmt(
            merchant_payments,
            "merchant_payment_id",
            merchant_payment_id,
            SessionState.PAID,
            receipt_reference=receipt_reference,
        )
        try:
            with _persistence("mark merchant payment paid"):
                result = await self.db.execute(stmt)
                row = result.mappings().first()
        except IntegrityError as exc:
            raise DuplicateReceipt(receipt_reference) from exc
        return MerchantPaymentRecord.from_row(row) if row else None

    async def mark_merchant_payment_failed(
        self,
        merchant_payment_id: UUID,
        reason: str,
    ) -> MerchantPaymentRecord | None:
        stmt = _resolve_stmt(
            merchant_payments,
            "merchant_payment_id",
            merchant_payment_id,
            SessionState.FAILED,
            failure_reason=reason,
        )
        with _persistence("mark merchant payment failed"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
        return MerchantPaymentRecord.from_row(row) if row else None

    async def insert_entitlement_if_absent(
        self,
        *,
        receipt_reference: str,
        merchant_id: str,
        session_id: UUID,
        amount: Decimal,
        merchant_payment_id: UUID | None = None,
    ) -> bool:
        stmt = (
            _insert_if_absent(self.dialect, entitlements, ["receipt_reference"])
            .values(
                receipt_reference=receipt_reference,
                merchant_id=merchant_id,
                session_id=session_id,
                merchant_payment_id=merchant_payment_id,
                amount=amount,
                created_at=utcnow(),
            )
            .returning(entitlements.c.receipt_reference)
        )
        with _persistence("record entitlement"):
            result = await self.db.execute(stmt)
            row = result.first()
        return row is not None

    async def entitlements_for_session(self, session_id: UUID) -> list[dict[str, Any]]:
        with _persistence("read entitlements"):
            result = await self.db.execute(
                select(entitlements).where(entitlements.c.session_id == session_id)
            )
            rows = result.mappings().all()
        return [dict(row) for row in rows]

    async def record_callback(
        self,
        *,
        channel: str,
        disposition: str,
        payload: Any,
        callback: GatewayCallback | None = None,
    ) -> None:
        with _persistence("record callback"):
            await self.db.execute(
                insert(inbox).values(**_inbox_values(channel, disposition, payload, callback))
            )
