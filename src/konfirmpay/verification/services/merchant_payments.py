"""Merchant Payment Service - the chained second leg.

Once a verification settles, the payer can be asked to pay the merchant's
own collection account the amount they originally intended. This leg is
separate from the verification session:

- Each attempt is a ``merchant_payment`` row, unique per (session, attempt)
- A gateway failure fails the attempt; the session stays PAID
- A settled attempt records exactly one entitlement keyed by its receipt
- A failed attempt can be retried while no entitlement exists
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from konfirmpay.verification.callbacks import (
    MERCHANT_PAYMENT_CHANNEL,
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
    MerchantPaymentNotRetryable,
    NotFound,
    PersistenceError,
)
from konfirmpay.verification.events import (
    CallbackUnmatched,
    EventEmitter,
    EventMetadata,
    MerchantPaymentFailed,
    MerchantPaymentRequested,
    MerchantPaymentSettled,
)
from konfirmpay.verification.gateway import AsyncPaymentGateway, PaymentGateway
from konfirmpay.verification.services.merchant_directory import (
    AsyncMerchantDirectory,
    MerchantDirectory,
)
from konfirmpay.verification.services.session_store import (
    AsyncSessionStore,
    DuplicateReceipt,
    MerchantPaymentRecord,
    SessionRecord,
    SessionStore,
)
from konfirmpay.verification.state_machine import SessionState

logger = logging.getLogger(__name__)

NO_COLLECTION_ACCOUNT = "merchant has no collection account"


def whole_units(amount: Decimal) -> int:
    """M-Pesa collects whole shillings: round half up, never below 1."""
    return max(1, int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def _metadata(session_id: UUID, actor_type: str = "gateway") -> EventMetadata:
    return EventMetadata.create(
        correlation_id=session_id,
        actor_type=actor_type,
        source_service="merchant_payments",
    )


def _retry_refusal(
    session: SessionRecord,
    latest: MerchantPaymentRecord | None,
    has_entitlement: bool,
    chaining_enabled: bool,
) -> str | None:
    """Reason a retry is not allowed, or None if it is."""
    if not chaining_enabled:
        return "merchant payment chaining is disabled"
    if session.state != SessionState.PAID:
        return f"verification is {session.state}, not PAID"
    if has_entitlement:
        return "merchant payment already settled"
    if latest is not None and latest.state != SessionState.FAILED:
        return f"attempt {latest.attempt} is {latest.state}"
    return None


def _result(
    status: CallbackStatus,
    callback: GatewayCallback,
    payment: MerchantPaymentRecord,
    new_state: str | None = None,
    message: str = "",
) -> CallbackResult:
    return CallbackResult(
        status=status,
        channel=MERCHANT_PAYMENT_CHANNEL,
        correlation_token=callback.correlation_token,
        session_id=payment.session_id,
        merchant_payment_id=payment.merchant_payment_id,
        previous_state=payment.state,
        new_state=new_state or payment.state,
        message=message,
    )


class MerchantPaymentService:
    """Starts, reconciles and retries merchant payment attempts."""

    def __init__(
        self,
        store: SessionStore,
        directory: MerchantDirectory,
        gateway: PaymentGateway,
        config: VerificationConfig,
        *,
        emitter: EventEmitter | None = None,
        callback_url: str | None = None,
    ):
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.callback_url = callback_url or None

    def initiate(self, session: SessionRecord, attempt: int = 1) -> MerchantPaymentRecord | None:
        """Create attempt ``attempt`` for a PAID session and request payment.

        Returns the attempt as it stands afterwards, or None if that attempt
        already exists.
        """
        destination = self.directory.get_collection_account(session.merchant_id) or None
        record = self.store.create_merchant_payment(
            session=session, attempt=attempt, destination=destination
        )
        if record is None:
            logger.info(
                "Merchant payment attempt %d for session %s already exists",
                attempt,
                session.session_id,
            )
            self.store.rollback()
            return None
        self.store.commit()

        self.emitter.emit(
            MerchantPaymentRequested(
                metadata=_metadata(session.session_id, actor_type="system"),
                session_id=session.session_id,
                merchant_payment_id=record.merchant_payment_id,
                attempt=record.attempt,
                amount=record.amount,
                destination=destination,
            )
        )

        if destination is None:
            logger.error("Merchant %s has no collection account", session.merchant_id)
            return self._fail(record, NO_COLLECTION_ACCOUNT)

        try:
            response = self.gateway.request_payment(
                record.payer_contact,
                whole_units(record.amount),
                record.client_reference,
                destination=destination,
                callback_url=self.callback_url,
                description="Merchant payment",
            )
        except GatewayTimeout:
            # The request may still reach the payer; the callback or the
            # expiry sweep resolves the attempt.
            logger.warning(
                "Gateway timed out on merchant payment %s; attempt left PENDING",
                record.merchant_payment_id,
            )
            return record
        except GatewayError as exc:
            logger.error(
                "Gateway refused merchant payment %s: %s",
                record.merchant_payment_id,
                exc.message,
            )
            return self._fail(record, exc.message)

        try:
            if not self.store.attach_merchant_payment_token(
                record.merchant_payment_id, response.correlation_token
            ):
                logger.warning(
                    "Merchant payment %s already had a correlation token",
                    record.merchant_payment_id,
                )
            self.store.commit()
        except (PersistenceError, IntegrityError):
            # The callback can still match on the client reference.
            self.store.rollback()
            logger.exception(
                "Could not attach token %s to merchant payment %s",
                response.correlation_token,
                record.merchant_payment_id,
            )
            return record
        return self.store.get_merchant_payment(record.merchant_payment_id)

    def _fail(self, record: MerchantPaymentRecord, reason: str) -> MerchantPaymentRecord:
        failed = self.store.mark_merchant_payment_failed(record.merchant_payment_id, reason)
        self.store.commit()
        if failed is None:
            return record
        self.emitter.emit(
            MerchantPaymentFailed(
                metadata=_metadata(record.session_id, actor_type="system"),
                session_id=record.session_id,
                merchant_payment_id=record.merchant_payment_id,
                attempt=record.attempt,
                reason=reason,
            )
        )
        return failed

    def retry(self, session_id: UUID) -> MerchantPaymentRecord:
        """Start the next attempt after a failed one.

        Raises:
            NotFound: Unknown session.
            MerchantPaymentNotRetryable: Session not PAID, payment already
                settled, or the latest attempt is not FAILED.
        """
        session = self.store.get(session_id)
        if session is None:
            raise NotFound(f"Verification session {session_id} not found")
        latest = self.store.latest_merchant_payment(session_id)
        has_entitlement = bool(self.store.entitlements_for_session(session_id))

        refusal = _retry_refusal(session, latest, has_entitlement, self.config.merchant_chaining)
        if refusal:
            raise MerchantPaymentNotRetryable(refusal)

        attempt = latest.attempt + 1 if latest else 1
        record = self.initiate(session, attempt=attempt)
        if record is None:
            raise MerchantPaymentNotRetryable(f"attempt {attempt} already started")
        return record

    def reconcile(self, callback: GatewayCallback, payload: Any) -> CallbackResult | None:
        """Apply a callback to the matching attempt. None if nothing matches."""
        payment = self.store.find_merchant_payment_for_callback(
            callback.correlation_token, callback.client_reference
        )
        if payment is None:
            return None

        if callback.outcome == CallbackOutcome.INTERIM:
            return self._finish(_result(CallbackStatus.INTERIM, callback, payment), callback, payload)

        if callback.outcome == CallbackOutcome.FAILURE:
            reason = callback.result_description or f"result code {callback.result_code}"
            failed = self.store.mark_merchant_payment_failed(payment.merchant_payment_id, reason)
            if failed is None:
                return self._finish(
                    _result(CallbackStatus.DUPLICATE, callback, payment), callback, payload
                )
            result = self._finish(
                _result(CallbackStatus.PROCESSED, callback, payment, SessionState.FAILED.value),
                callback,
                payload,
            )
            self.emitter.emit(
                MerchantPaymentFailed(
                    metadata=_metadata(payment.session_id),
                    session_id=payment.session_id,
                    merchant_payment_id=payment.merchant_payment_id,
                    attempt=payment.attempt,
                    reason=reason,
                )
            )
            return result

        receipt = callback.receipt_reference or ""
        try:
            paid = self.store.mark_merchant_payment_paid(payment.merchant_payment_id, receipt)
        except DuplicateReceipt:
            self.store.rollback()
            logger.error(
                "Receipt %s on merchant payment %s already belongs to another payment",
                receipt,
                payment.merchant_payment_id,
            )
            return self._finish(
                _result(CallbackStatus.CONFLICT, callback, payment, message="receipt already used"),
                callback,
                payload,
            )

        if paid is None:
            if payment.state == SessionState.FAILED:
                logger.error(
                    "Merchant payment %s settled with receipt %s after it was failed",
                    payment.merchant_payment_id,
                    receipt,
                )
            return self._finish(_result(CallbackStatus.DUPLICATE, callback, payment), callback, payload)

        created = self.store.insert_entitlement_if_absent(
            receipt_reference=receipt,
            merchant_id=paid.merchant_id,
            session_id=paid.session_id,
            amount=paid.amount,
            merchant_payment_id=paid.merchant_payment_id,
        )
        if not created:
            logger.warning("Entitlement for receipt %s already recorded", receipt)
        result = self._finish(
            _result(CallbackStatus.PROCESSED, callback, payment, SessionState.PAID.value),
            callback,
            payload,
        )
        if created:
            self.emitter.emit(
                MerchantPaymentSettled(
                    metadata=_metadata(paid.session_id),
                    session_id=paid.session_id,
                    merchant_payment_id=paid.merchant_payment_id,
                    merchant_id=paid.merchant_id,
                    receipt_reference=receipt,
                    amount=paid.amount,
                )
            )
        return result

    def reconcile_callback(self, payload: Any) -> CallbackResult:
        """Entry point for callbacks posted to the merchant-leg URL.

        Always returns a result; a store failure is rolled back and logged
        for replay.
        """
        try:
            return self._handle(payload)
        except PersistenceError as exc:
            self.store.rollback()
            return store_failure(MERCHANT_PAYMENT_CHANNEL, payload, exc)

    def _handle(self, payload: Any) -> CallbackResult:
        try:
            callback = parse_callback(
                payload,
                success_code=self.config.success_result_code,
                interim_codes=self.config.interim_result_codes,
            )
        except CallbackParseError as exc:
            logger.warning("Ignoring unrecognised merchant callback: %s", exc.message)
            self.store.record_callback(
                channel=MERCHANT_PAYMENT_CHANNEL,
                disposition=CallbackStatus.INVALID.value,
                payload=payload,
            )
            self.store.commit()
            return CallbackResult(
                status=CallbackStatus.INVALID,
                channel=MERCHANT_PAYMENT_CHANNEL,
                message=exc.message,
            )

        result = self.reconcile(callback, payload)
        if result is not None:
            return result

        logger.warning(
            "Unmatched merchant callback %s (reference %s)",
            callback.correlation_token,
            callback.client_reference,
        )
        result = CallbackResult(
            status=CallbackStatus.UNMATCHED,
            channel=MERCHANT_PAYMENT_CHANNEL,
            correlation_token=callback.correlation_token,
        )
        self._finish(result, callback, payload)
        self.emitter.emit(
            CallbackUnmatched(
                metadata=EventMetadata.create(actor_type="gateway", source_service="merchant_payments"),
                channel=MERCHANT_PAYMENT_CHANNEL,
                correlation_token=callback.correlation_token,
                client_reference=callback.client_reference,
                result_code=callback.result_code,
            )
        )
        return result

    def _finish(self, result: CallbackResult, callback: GatewayCallback, payload: Any) -> CallbackResult:
        self.store.record_callback(
            channel=MERCHANT_PAYMENT_CHANNEL,
            disposition=result.status.value,
            payload=payload,
            callback=callback,
        )
        self.store.commit()
        return result


class AsyncMerchantPaymentService:
    """Async version of MerchantPaymentService."""

    def __init__(
        self,
        store: AsyncSessionStore,
        directory: AsyncMerchantDirectory,
        gateway: AsyncPaymentGateway,
        config: VerificationConfig,
        *,
        emitter: EventEmitter | None = None,
        callback_url: str | None = None,
    ):
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.callback_url = callback_url or None

    async def initiate(
        self,
        session: SessionRecord,
        attempt: int = 1,
    ) -> MerchantPaymentRecord | None:
        destination = await self.directory.get_collection_account(session.merchant_id) or None
        record = await self.store.create_merchant_payment(
            session=session, attempt=attempt, destination=destination
        )
        if record is None:
            logger.info(
                "Merchant payment attempt %d for session %s already exists",
                attempt,
                session.session_id,
            )
            await self.store.rollback()
            return None
        await self.store.commit()

        self.emitter.emit(
            MerchantPaymentRequested(
                metadata=_metadata(session.session_id, actor_type="system"),
                session_id=session.session_id,
                merchant_payment_id=record.merchant_payment_id,
                attempt=record.attempt,
                amount=record.amount,
                destination=destination,
            )
        )

        if destination is None:
            logger.error("Merchant %s has no collection account", session.merchant_id)
            return await self._fail(record, NO_COLLECTION_ACCOUNT)

        try:
            response = await self.gateway.request_payment(
                record.payer_contact,
                whole_units(record.amount),
                record.client_reference,
                destination=destination,
                callback_url=self.callback_url,
                description="Merchant payment",
            )
        except GatewayTimeout:
            logger.warning(
                "Gateway timed out on merchant payment %s; attempt left PENDING",
                record.merchant_payment_id,
            )
            return record
        except GatewayError as exc:
            logger.error(
                "Gateway refused merchant payment %s: %s",
                record.merchant_payment_id,
                exc.message,
            )
            return await self._fail(record, exc.message)

        try:
            if not await self.store.attach_merchant_payment_token(
                record.merchant_payment_id, response.correlation_token
            ):
                logger.warning(
                    "Merchant payment %s already had a correlation token",
                    record.merchant_payment_id,
                )
            await self.store.commit()
        except (PersistenceError, IntegrityError):
            await self.store.rollback()
            logger.exception(
                "Could not attach token %s to merchant payment %s",
                response.correlation_token,
                record.merchant_payment_id,
            )
            return record
        return await self.store.get_merchant_payment(record.merchant_payment_id)

    async def _fail(self, record: MerchantPaymentRecord, reason: str) -> MerchantPaymentRecord:
        failed = await self.store.mark_merchant_payment_failed(record.merchant_payment_id, reason)
        await self.store.commit()
        if failed is None:
            return record
        self.emitter.emit(
            MerchantPaymentFailed(
                metadata=_metadata(record.session_id, actor_type="system"),
                session_id=record.session_id,
                merchant_payment_id=record.merchant_payment_id,
                attempt=record.attempt,
                reason=reason,
            )
        )
        return failed

    async def retry(self, session_id: UUID) -> MerchantPaymentRecord:
        session = await self.store.get(session_id)
        if session is None:
            raise NotFound(f"Verification session {session_id} not found")
        latest = await self.store.latest_merchant_payment(session_id)
        has_entitlement = bool(await self.store.entitlements_for_session(session_id))

        refusal = _retry_refusal(session, latest, has_entitlement, self.config.merchant_chaining)
        if refusal:
            raise MerchantPaymentNotRetryable(refusal)

        attempt = latest.attempt + 1 if latest else 1
        record = await self.initiate(session, attempt=attempt)
        if record is None:
            raise MerchantPaymentNotRetryable(f"attempt {attempt} already started")
        return record

    async def reconcile(self, callback: GatewayCallback, payload: Any) -> CallbackResult | None:
        payment = await self.store.find_merchant_payment_for_callback(
            callback.correlation_token, callback.client_reference
        )
        if payment is None:
            return None

        if callback.outcome == CallbackOutcome.INTERIM:
            return await self._finish(
                _result(CallbackStatus.INTERIM, callback, payment), callback, payload
            )

        if callback.outcome == CallbackOutcome.FAILURE:
            reason = callback.result_description or f"result code {callback.result_code}"
            failed = await self.store.mark_merchant_payment_failed(payment.merchant_payment_id, reason)
            if failed is None:
                return await self._finish(
                    _result(CallbackStatus.DUPLICATE, callback, payment), callback, payload
                )
            result = await self._finish(
                _result(CallbackStatus.PROCESSED, callback, payment, SessionState.FAILED.value),
                callback,
                payload,
            )
            self.emitter.emit(
                MerchantPaymentFailed(
                    metadata=_metadata(payment.session_id),
                    session_id=payment.session_id,
                    merchant_payment_id=payment.merchant_payment_id,
                    attempt=payment.attempt,
                    reason=reason,
                )
            )
            return result

        receipt = callback.receipt_reference or ""
        try:
            paid = await self.store.mark_merchant_payment_paid(payment.merchant_payment_id, receipt)
        except DuplicateReceipt:
            await self.store.rollback()
            logger.error(
                "Receipt %s on merchant payment %s already belongs to another payment",
                receipt,
                payment.merchant_payment_id,
            )
            return await self._finish(
                _result(CallbackStatus.CONFLICT, callback, payment, message="receipt already used"),
                callback,
                payload,
            )

        if paid is None:
            if payment.state == SessionState.FAILED:
                logger.error(
                    "Merchant payment %s settled with receipt %s after it was failed",
                    payment.merchant_payment_id,
                    receipt,
                )
            return await self._finish(
                _result(CallbackStatus.DUPLICATE, callback, payment), callback, payload
            )

        created = await self.store.insert_entitlement_if_absent(
            receipt_reference=receipt,
            merchant_id=paid.merchant_id,
            session_id=paid.session_id,
            amount=paid.amount,
            merchant_payment_id=paid.merchant_payment_id,
        )
        if not created:
            logger.warning("Entitlement for receipt %s already recorded", receipt)
        result = await self._finish(
            _result(CallbackStatus.PROCESSED, callback, payment, SessionState.PAID.value),
            callback,
            payload,
        )
        if created:
            self.emitter.emit(
                MerchantPaymentSettled(
                    metadata=_metadata(paid.session_id),
                    session_id=paid.session_id,
                    merchant_payment_id=paid.merchant_payment_id,
                    merchant_id=paid.merchant_id,
                    receipt_reference=receipt,
                    amount=paid.amount,
                )
            )
        return result

    async def reconcile_callback(self, payload: Any) -> CallbackResult:
        try:
            return await self._handle(payload)
        except PersistenceError as exc:
            await self.store.rollback()
            return store_failure(MERCHANT_PAYMENT_CHANNEL, payload, exc)

    async def _handle(self, payload: Any) -> CallbackResult:
        try:
            callback = parse_callback(
                payload,
                success_code=self.config.success_result_code,
                interim_codes=self.config.interim_result_codes,
            )
        except CallbackParseError as exc:
            logger.warning("Ignoring unrecognised merchant callback: %s", exc.message)
            await self.store.record_callback(
                channel=MERCHANT_PAYMENT_CHANNEL,
                disposition=CallbackStatus.INVALID.value,
                payload=payload,
            )
            await self.store.commit()
            return CallbackResult(
                status=CallbackStatus.INVALID,
                channel=MERCHANT_PAYMENT_CHANNEL,
                message=exc.message,
            )

        result = await self.reconcile(callback, payload)
        if result is not None:
            return result

        logger.warning(
            "Unmatched merchant callback %s (reference %s)",
            callback.correlation_token,
            callback.client_reference,
        )
        result = CallbackResult(
            status=CallbackStatus.UNMATCHED,
            channel=MERCHANT_PAYMENT_CHANNEL,
            correlation_token=callback.correlation_token,
        )
        await self._finish(result, callback, payload)
        self.emitter.emit(
            CallbackUnmatched(
                metadata=EventMetadata.create(actor_type="gateway", source_service="merchant_payments"),
                channel=MERCHANT_PAYMENT_CHANNEL,
                correlation_token=callback.correlation_token,
                client_reference=callback.client_reference,
                result_code=callback.result_code,
            )
        )
        return result

    async def _finish(
        self,
        result: CallbackResult,
        callback: GatewayCallback,
        payload: Any,
    ) -> CallbackResult:
        await self.store.record_callback(
            channel=MERCHANT_PAYMENT_CHANNEL,
            disposition=result.status.value,
            payload=payload,
            callback=callback,
        )
        await self.store.commit()
        return result
