"""Verification Orchestrator - the verification fee flow.

Coordinates a verification session through:
1. Session creation (committed before the gateway is contacted)
2. Fee request to the payer via the payment gateway
3. Callback reconciliation with conditional state transitions
4. Merchant payment chaining for the transition winner

Terminal transitions are single conditional updates in the store; two
callbacks racing for the same session produce exactly one winner and the
loser observes DUPLICATE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from konfirmpay.verification.callbacks import (
    VERIFICATION_CHANNEL,
    CallbackOutcome,
    CallbackResult,
    CallbackStatus,
    GatewayCallback,
    parse_callback,
    store_failure,
)
from konfirmpay.verification.config import VerificationConfig
from konfirmpay.verification.errors import (
    CallbackParseError,
    GatewayError,
    GatewayTimeout,
    InvalidRequest,
    PersistenceError,
    VerificationError,
)
from konfirmpay.verification.events import (
    CallbackUnmatched,
    EventEmitter,
    EventMetadata,
    VerificationFailed,
    VerificationPaid,
    VerificationStarted,
)
from konfirmpay.verification.fees import FeePolicy, to_amount
from konfirmpay.verification.gateway import AsyncPaymentGateway, PaymentGateway
from konfirmpay.verification.services.merchant_directory import (
    AsyncMerchantDirectory,
    MerchantDirectory,
)
from konfirmpay.verification.services.merchant_payments import (
    AsyncMerchantPaymentService,
    MerchantPaymentService,
)
from konfirmpay.verification.services.session_store import (
    AsyncSessionStore,
    DuplicateReceipt,
    SessionRecord,
    SessionStore,
)
from konfirmpay.verification.state_machine import SessionState

logger = logging.getLogger(__name__)

FEE_DESCRIPTION = "KonfirmPay Verification Fee"


@dataclass(frozen=True)
class StartResult:
    """Result of starting a verification."""

    session_id: UUID
    verification_fee: int
    message: str
    correlation_token: str | None = None
    gateway_timed_out: bool = False


def normalize_payer_contact(value: Any, country_code: str = "254") -> str:
    """Normalise a payer phone number to international digits.

    ``0712 345 678`` and ``+254712345678`` both become ``254712345678``.

    Raises:
        InvalidRequest: Missing or not a phone number.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest("payer_contact is required")
    digits = value.strip().replace(" ", "").replace("-", "")
    if digits.startswith("+"):
        digits = digits[1:]
    elif digits.startswith("0"):
        digits = country_code + digits[1:]
    if not digits.isdigit() or not 9 <= len(digits) <= 15:
        raise InvalidRequest("payer_contact must be a phone number")
    return digits


def _require_merchant_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest("merchant_id is required")
    return value.strip()


def _validate_start(
    merchant_id: Any,
    payer_contact: Any,
    intended_amount: Any,
    fee_policy: FeePolicy,
    config: VerificationConfig,
) -> tuple[str, str, Decimal, int]:
    merchant = _require_merchant_id(merchant_id)
    contact = normalize_payer_contact(payer_contact, config.default_country_code)
    if intended_amount is None:
        raise InvalidRequest("intended_amount is required")
    amount = to_amount(intended_amount)
    return merchant, contact, amount, fee_policy.fee(amount)


def _start_message(fee: int) -> str:
    return f"Verification fee KES {fee} required"


def _failure_reason(callback: GatewayCallback) -> str:
    return callback.result_description or f"result code {callback.result_code}"


def _result(
    status: CallbackStatus,
    callback: GatewayCallback | None,
    session: SessionRecord | None = None,
    new_state: str | None = None,
    message: str = "",
) -> CallbackResult:
    return CallbackResult(
        status=status,
        channel=VERIFICATION_CHANNEL,
        correlation_token=callback.correlation_token if callback else None,
        session_id=session.session_id if session else None,
        previous_state=session.state if session else None,
        new_state=new_state or (session.state if session else None),
        message=message,
    )


def _unmatched_event(callback: GatewayCallback) -> CallbackUnmatched:
    return CallbackUnmatched(
        metadata=EventMetadata.create(actor_type="gateway"),
        channel=VERIFICATION_CHANNEL,
        correlation_token=callback.correlation_token,
        client_reference=callback.client_reference,
        result_code=callback.result_code,
    )


class VerificationOrchestrator:
    """Verification orchestration service.

    Coordinates the verification lifecycle:
    - Validate the request and price the fee
    - Persist the session, then ask the payer for the fee
    - Reconcile gateway callbacks idempotently
    - Hand settled sessions to the merchant payment leg
    """

    def __init__(
        self,
        store: SessionStore,
        directory: MerchantDirectory,
        gateway: PaymentGateway,
        fee_policy: FeePolicy,
        config: VerificationConfig,
        *,
        emitter: EventEmitter | None = None,
        merchant_payments: MerchantPaymentService | None = None,
    ):
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self.fee_policy = fee_policy
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.merchant_payments = merchant_payments

    def start_verification(
        self,
        merchant_id: Any,
        payer_contact: Any,
        intended_amount: Any,
    ) -> StartResult:
        """Create a session and request the verification fee from the payer.

        Args:
            merchant_id: Merchant whose identity is withheld until payment.
            payer_contact: Payer phone number.
            intended_amount: Amount the payer means to pay the merchant.

        Returns:
            StartResult with the session id and fee.

        Raises:
            InvalidRequest: Missing or malformed input, or unknown merchant.
            InvalidAmount: Amount is not a positive number.
            PersistenceError: Session could not be stored; gateway not called.
            GatewayUnavailable: Gateway unreachable; session is FAILED.
            GatewayRejected: Gateway refused the request; session is FAILED.
        """
        merchant, contact, amount, fee = _validate_start(
            merchant_id, payer_contact, intended_amount, self.fee_policy, self.config
        )
        if self.directory.get_profile(merchant) is None:
            raise InvalidRequest(f"Unknown merchant {merchant}")

        try:
            session = self.store.create_session(
                merchant_id=merchant,
                payer_contact=contact,
                intended_amount=amount,
                verification_fee=fee,
            )
            self.store.commit()
        except (PersistenceError, IntegrityError) as exc:
            self.store.rollback()
            logger.error("Could not persist verification session: %s", exc)
            if isinstance(exc, PersistenceError):
                raise
            raise PersistenceError("Could not create verification session") from exc

        try:
            response = self.gateway.request_payment(
                contact,
                fee,
                session.client_reference,
                description=FEE_DESCRIPTION,
            )
        except GatewayTimeout:
            logger.warning(
                "Gateway timed out for session %s; left PENDING for the callback",
                session.session_id,
            )
            self._started(session, None)
            return StartResult(
                session_id=session.session_id,
                verification_fee=fee,
                message=_start_message(fee),
                gateway_timed_out=True,
            )
        except GatewayError as exc:
            logger.error("Gateway refused session %s: %s", session.session_id, exc.message)
            self._fail_start(session, exc)
            raise

        self._attach_token(session, response.correlation_token)
        self._started(session, response.correlation_token)
        return StartResult(
            session_id=session.session_id,
            verification_fee=fee,
            message=_start_message(fee),
            correlation_token=response.correlation_token,
        )

    def _attach_token(self, session: SessionRecord, token: str) -> None:
        # Best effort: a callback can still match on the client reference.
        try:
            if not self.store.attach_correlation_token(session.session_id, token):
                logger.warning("Session %s already had a correlation token", session.session_id)
            self.store.commit()
        except (PersistenceError, IntegrityError):
            self.store.rollback()
            logger.exception("Could not attach token %s to session %s", token, session.session_id)

    def _fail_start(self, session: SessionRecord, exc: GatewayError) -> None:
        try:
            failed = self.store.mark_failed(session.session_id, exc.message)
            self.store.commit()
        except PersistenceError:
            self.store.rollback()
            logger.exception("Could not fail session %s after gateway error", session.session_id)
            return
        if failed is not None:
            self._failed(failed, exc.message)

    def _started(self, session: SessionRecord, token: str | None) -> None:
        self.emitter.emit(
            VerificationStarted(
                metadata=EventMetadata.create(correlation_id=session.session_id),
                session_id=session.session_id,
                merchant_id=session.merchant_id,
                verification_fee=session.verification_fee,
                correlation_token=token,
            )
        )

    def _failed(self, session: SessionRecord, reason: str) -> None:
        self.emitter.emit(
            VerificationFailed(
                metadata=EventMetadata.create(correlation_id=session.session_id, actor_type="gateway"),
                session_id=session.session_id,
                reason=reason,
            )
        )

    def reconcile_callback(self, payload: Any) -> CallbackResult:
        """Apply a gateway callback to its session.

        Every payload produces a result and the caller always acknowledges
        it. A store failure is rolled back and reported as ERROR, with the
        callback logged for replay.
        """
        try:
            return self._handle(payload)
        except PersistenceError as exc:
            self.store.rollback()
            return store_failure(VERIFICATION_CHANNEL, payload, exc)

    def _handle(self, payload: Any) -> CallbackResult:
        try:
            callback = parse_callback(
                payload,
                success_code=self.config.success_result_code,
                interim_codes=self.config.interim_result_codes,
            )
        except CallbackParseError as exc:
            logger.warning("Ignoring unrecognised callback: %s", exc.message)
            return self._finish(_result(CallbackStatus.INVALID, None, message=exc.message), None, payload)
        return self._reconcile(callback, payload)

    def _reconcile(self, callback: GatewayCallback, payload: Any) -> CallbackResult:
        session = self.store.find_for_callback(callback.correlation_token, callback.client_reference)
        if session is None:
            if self.merchant_payments is not None:
                result = self.merchant_payments.reconcile(callback, payload)
                if result is not None:
                    return result
            return self._unmatched(callback, payload)

        if callback.outcome == CallbackOutcome.INTERIM:
            logger.info(
                "Interim result %s for session %s", callback.result_code, session.session_id
            )
            return self._finish(_result(CallbackStatus.INTERIM, callback, session), callback, payload)

        if callback.outcome == CallbackOutcome.FAILURE:
            return self._apply_failure(session, callback, payload)
        return self._apply_success(session, callback, payload)

    def _apply_failure(
        self,
        session: SessionRecord,
        callback: GatewayCallback,
        payload: Any,
    ) -> CallbackResult:
        reason = _failure_reason(callback)
        failed = self.store.mark_failed(session.session_id, reason)
        if failed is None:
            # Already terminal; a late failure never overrides PAID.
            return self._finish(_result(CallbackStatus.DUPLICATE, callback, session), callback, payload)

        result = self._finish(
            _result(CallbackStatus.PROCESSED, callback, session, SessionState.FAILED.value),
            callback,
            payload,
        )
        logger.info("Session %s failed: %s", session.session_id, reason)
        self._failed(failed, reason)
        return result

    def _apply_success(
        self,
        session: SessionRecord,
        callback: GatewayCallback,
        payload: Any,
    ) -> CallbackResult:
        receipt = callback.receipt_reference or ""
        try:
            paid = self.store.mark_paid(session.session_id, receipt)
        except DuplicateReceipt:
            self.store.rollback()
            logger.error(
                "Receipt %s for session %s already belongs to another session",
                receipt,
                session.session_id,
            )
            return self._finish(
                _result(CallbackStatus.CONFLICT, callback, session, message="receipt already used"),
                callback,
                payload,
            )

        if paid is None:
            if session.state == SessionState.FAILED:
                logger.error(
                    "Session %s settled with receipt %s after it was failed",
                    session.session_id,
                    receipt,
                )
            return self._finish(_result(CallbackStatus.DUPLICATE, callback, session), callback, payload)

        result = self._finish(
            _result(CallbackStatus.PROCESSED, callback, session, SessionState.PAID.value),
            callback,
            payload,
        )
        logger.info("Session %s paid with receipt %s", paid.session_id, receipt)
        self.emitter.emit(
            VerificationPaid(
                metadata=EventMetadata.create(correlation_id=paid.session_id, actor_type="gateway"),
                session_id=paid.session_id,
                merchant_id=paid.merchant_id,
                receipt_reference=receipt,
            )
        )
        # Only the transition winner reaches this point.
        self._chain(paid)
        return result

    def _chain(self, session: SessionRecord) -> None:
        if not self.config.merchant_chaining or self.merchant_payments is None:
            return
        try:
            self.merchant_payments.initiate(session)
        except VerificationError:
            self.store.rollback()
            logger.exception("Merchant payment for session %s could not be started", session.session_id)

    def _unmatched(self, callback: GatewayCallback, payload: Any) -> CallbackResult:
        logger.warning(
            "Unmatched callback %s (reference %s, result %s)",
            callback.correlation_token,
            callback.client_reference,
            callback.result_code,
        )
        result = self._finish(_result(CallbackStatus.UNMATCHED, callback), callback, payload)
        self.emitter.emit(_unmatched_event(callback))
        return result

    def _finish(
        self,
        result: CallbackResult,
        callback: GatewayCallback | None,
        payload: Any,
    ) -> CallbackResult:
        self.store.record_callback(
            channel=VERIFICATION_CHANNEL,
            disposition=result.status.value,
            payload=payload,
            callback=callback,
        )
        self.store.commit()
        return result


class AsyncVerificationOrchestrator:
    """Async version of VerificationOrchestrator."""

    def __init__(
        self,
        store: AsyncSessionStore,
        directory: AsyncMerchantDirectory,
        gateway: AsyncPaymentGateway,
        fee_policy: FeePolicy,
        config: VerificationConfig,
        *,
        emitter: EventEmitter | None = None,
        merchant_payments: AsyncMerchantPaymentService | None = None,
    ):
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self.fee_policy = fee_policy
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.merchant_payments = merchant_payments

    async def start_verification(
        self,
        merchant_id: Any,
        payer_contact: Any,
        intended_amount: Any,
    ) -> StartResult:
        merchant, contact, amount, fee = _validate_start(
            merchant_id, payer_contact, intended_amount, self.fee_policy, self.config
        )
        if await self.directory.get_profile(merchant) is None:
            raise InvalidRequest(f"Unknown merchant {merchant}")

        try:
            session = await self.store.create_session(
                merchant_id=merchant,
                payer_contact=contact,
                intended_amount=amount,
                verification_fee=fee,
            )
            await self.store.commit()
        except (PersistenceError, IntegrityError) as exc:
            await self.store.rollback()
            logger.error("Could not persist verification session: %s", exc)
            if isinstance(exc, PersistenceError):
                raise
            raise PersistenceError("Could not create verification session") from exc

        try:
            response = await self.gateway.request_payment(
                contact,
                fee,
                session.client_reference,
                description=FEE_DESCRIPTION,
            )
        except GatewayTimeout:
            logger.warning(
                "Gateway timed out for session %s; left PENDING for the callback",
                session.session_id,
            )
            self._started(session, None)
            return StartResult(
                session_id=session.session_id,
                verification_fee=fee,
                message=_start_message(fee),
                gateway_timed_out=True,
            )
        except GatewayError as exc:
            logger.error("Gateway refused session %s: %s", session.session_id, exc.message)
            await self._fail_start(session, exc)
            raise

        await self._attach_token(session, response.correlation_token)
        self._started(session, response.correlation_token)
        return StartResult(
            session_id=session.session_id,
            verification_fee=fee,
            message=_start_message(fee),
            correlation_token=response.correlation_token,
        )

    async def _attach_token(self, session: SessionRecord, token: str) -> None:
        try:
            if not await self.store.attach_correlation_token(session.session_id, token):
                logger.warning("Session %s already had a correlation token", session.session_id)
            await self.store.commit()
        except (PersistenceError, IntegrityError):
            await self.store.rollback()
            logger.exception("Could not attach token %s to session %s", token, session.session_id)

    async def _fail_start(self, session: SessionRecord, exc: GatewayError) -> None:
        try:
            failed = await self.store.mark_failed(session.session_id, exc.message)
            await self.store.commit()
        except PersistenceError:
            await self.store.rollback()
            logger.exception("Could not fail session %s after gateway error", session.session_id)
            return
        if failed is not None:
            self._failed(failed, exc.message)

    def _started(self, session: SessionRecord, token: str | None) -> None:
        self.emitter.emit(
            VerificationStarted(
                metadata=EventMetadata.create(correlation_id=session.session_id),
                session_id=session.session_id,
                merchant_id=session.merchant_id,
                verification_fee=session.verification_fee,
                correlation_token=token,
            )
        )

    def _failed(self, session: SessionRecord, reason: str) -> None:
        self.emitter.emit(
            VerificationFailed(
                metadata=EventMetadata.create(correlation_id=session.session_id, actor_type="gateway"),
                session_id=session.session_id,
                reason=reason,
            )
        )

    async def reconcile_callback(self, payload: Any) -> CallbackResult:
        try:
            return await self._handle(payload)
        except PersistenceError as exc:
            await self.store.rollback()
            return store_failure(VERIFICATION_CHANNEL, payload, exc)

    async def _handle(self, payload: Any) -> CallbackResult:
        try:
            callback = parse_callback(
                payload,
                success_code=self.config.success_result_code,
                interim_codes=self.config.interim_result_codes,
            )
        except CallbackParseError as exc:
            logger.warning("Ignoring unrecognised callback: %s", exc.message)
            return await self._finish(
                _result(CallbackStatus.INVALID, None, message=exc.message), None, payload
            )
        return await self._reconcile(callback, payload)

    async def _reconcile(self, callback: GatewayCallback, payload: Any) -> CallbackResult:
        session = await self.store.find_for_callback(
            callback.correlation_token, callback.client_reference
        )
        if session is None:
            if self.merchant_payments is not None:
                result = await self.merchant_payments.reconcile(callback, payload)
                if result is not None:
                    return result
            return await self._unmatched(callback, payload)

        if callback.outcome == CallbackOutcome.INTERIM:
            logger.info(
                "Interim result %s for session %s", callback.result_code, session.session_id
            )
            return await self._finish(
                _result(CallbackStatus.INTERIM, callback, session), callback, payload
            )

        if callback.outcome == CallbackOutcome.FAILURE:
            return await self._apply_failure(session, callback, payload)
        return await self._apply_success(session, callback, payload)

    async def _apply_failure(
        self,
        session: SessionRecord,
        callback: GatewayCallback,
        payload: Any,
    ) -> CallbackResult:
        reason = _failure_reason(callback)
        failed = await self.store.mark_failed(session.session_id, reason)
        if failed is None:
            return await self._finish(
                _result(CallbackStatus.DUPLICATE, callback, session), callback, payload
            )

        result = await self._finish(
            _result(CallbackStatus.PROCESSED, callback, session, SessionState.FAILED.value),
            callback,
            payload,
        )
        logger.info("Session %s failed: %s", session.session_id, reason)
        self._failed(failed, reason)
        return result

    async def _apply_success(
        self,
        session: SessionRecord,
        callback: GatewayCallback,
        payload: Any,
    ) -> CallbackResult:
        receipt = callback.receipt_reference or ""
        try:
            paid = await self.store.mark_paid(session.session_id, receipt)
        except DuplicateReceipt:
            await self.store.rollback()
            logger.error(
                "Receipt %s for session %s already belongs to another session",
                receipt,
                session.session_id,
            )
            return await self._finish(
                _result(CallbackStatus.CONFLICT, callback, session, message="receipt already used"),
                callback,
                payload,
            )

        if paid is None:
            if session.state == SessionState.FAILED:
                logger.error(
                    "Session %s settled with receipt %s after it was failed",
                    session.session_id,
                    receipt,
                )
            return await self._finish(
                _result(CallbackStatus.DUPLICATE, callback, session), callback, payload
            )

        result = await self._finish(
            _result(CallbackStatus.PROCESSED, callback, session, SessionState.PAID.value),
            callback,
            payload,
        )
        logger.info("Session %s paid with receipt %s", paid.session_id, receipt)
        self.emitter.emit(
            VerificationPaid(
                metadata=EventMetadata.create(correlation_id=paid.session_id, actor_type="gateway"),
                session_id=paid.session_id,
                merchant_id=paid.merchant_id,
                receipt_reference=receipt,
            )
        )
        await self._chain(paid)
        return result

    async def _chain(self, session: SessionRecord) -> None:
        if not self.config.merchant_chaining or self.merchant_payments is None:
            return
        try:
            await self.merchant_payments.initiate(session)
        except VerificationError:
            await self.store.rollback()
            logger.exception("Merchant payment for session %s could not be started", session.session_id)

    async def _unmatched(self, callback: GatewayCallback, payload: Any) -> CallbackResult:
        logger.warning(
            "Unmatched callback %s (reference %s, result %s)",
            callback.correlation_token,
            callback.client_reference,
            callback.result_code,
        )
        result = await self._finish(_result(CallbackStatus.UNMATCHED, callback), callback, payload)
        self.emitter.emit(_unmatched_event(callback))
        return result

    async def _finish(
        self,
        result: CallbackResult,
        callback: GatewayCallback | None,
        payload: Any,
    ) -> CallbackResult:
        await self.store.record_callback(
            channel=VERIFICATION_CHANNEL,
            disposition=result.status.value,
            payload=payload,
            callback=callback,
        )
        await self.store.commit()
        return result
