"""Tests for the chained merchant payment leg.

Tests verify:
1. Only a settled verification starts the merchant leg, and only when enabled
2. A settled merchant payment records exactly one entitlement
3. Merchant-leg failures never touch the verification session
4. Retries follow a failed attempt and stop once an entitlement exists
5. Store failures on the merchant leg never surface to the gateway
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from konfirmpay.verification.callbacks import CallbackStatus
from konfirmpay.verification.errors import (
    GatewayRejected,
    GatewayTimeout,
    MerchantPaymentNotRetryable,
    NotFound,
    PersistenceError,
)
from konfirmpay.verification.events import (
    MerchantPaymentFailed,
    MerchantPaymentRequested,
    MerchantPaymentSettled,
)
from konfirmpay.verification.gateway import StubGateway
from konfirmpay.verification.services import NO_COLLECTION_ACCOUNT, SessionStore, whole_units
from tests.conftest import MERCHANT_ID, MERCHANT_PAYBILL, PAYER


class MerchantLegGateway(StubGateway):
    """Accepts verification fees; fails every merchant-leg request."""

    def __init__(self, merchant_error):
        super().__init__()
        self.merchant_error = merchant_error

    def request_payment(self, payer_contact, amount, client_reference, **kwargs):
        if kwargs.get("destination"):
            self.requests.append({"destination": kwargs["destination"], "amount": amount})
            raise self.merchant_error
        return super().request_payment(payer_contact, amount, client_reference, **kwargs)


def _settle(orchestrator, amount=Decimal("1500"), merchant_id=MERCHANT_ID, receipt="RCPT1"):
    started = orchestrator.start_verification(merchant_id, PAYER, amount)
    orchestrator.reconcile_callback(StubGateway.success_callback(started.correlation_token, receipt))
    return started


class TestWholeUnits:
    """Merchant amounts are whole shillings."""

    @pytest.mark.parametrize(
        "amount,expected",
        [("1500", 1500), ("1500.49", 1500), ("1500.50", 1501), ("0.40", 1), ("0.01", 1)],
    )
    def test_rounding(self, amount, expected):
        assert whole_units(Decimal(amount)) == expected


class TestChainingDisabled:
    """Default configuration never contacts the merchant."""

    def test_no_merchant_leg(self, orchestrator, gateway, store):
        started = _settle(orchestrator)

        assert store.get(started.session_id).state == "PAID"
        assert store.latest_merchant_payment(started.session_id) is None
        assert gateway.requests_to(MERCHANT_PAYBILL) == []

    def test_retry_refused(self, orchestrator):
        started = _settle(orchestrator)
        with pytest.raises(MerchantPaymentNotRetryable, match="disabled"):
            orchestrator.merchant_payments.retry(started.session_id)

    def test_retry_unknown_session_not_found(self, orchestrator):
        with pytest.raises(NotFound):
            orchestrator.merchant_payments.retry(uuid4())


class TestChainingEnabled:
    """A settled verification starts the merchant leg once."""

    def test_paid_session_starts_merchant_payment(self, chaining_orchestrator, gateway, store, recorder):
        started = _settle(chaining_orchestrator)

        payment = store.latest_merchant_payment(started.session_id)
        assert payment.attempt == 1
        assert payment.state == "PENDING"
        assert payment.destination == MERCHANT_PAYBILL
        assert payment.amount == Decimal("1500")
        assert payment.correlation_token is not None

        [request] = gateway.requests_to(MERCHANT_PAYBILL)
        assert request["amount"] == 1500
        assert request["payer_contact"] == PAYER
        assert request["callback_url"] == "https://example.test/mp"
        assert len(recorder.of_type(MerchantPaymentRequested)) == 1

    def test_duplicate_success_starts_no_second_leg(self, chaining_orchestrator, gateway, store):
        started = _settle(chaining_orchestrator)
        chaining_orchestrator.reconcile_callback(
            StubGateway.success_callback(started.correlation_token, "RCPT1")
        )

        assert len(gateway.requests_to(MERCHANT_PAYBILL)) == 1
        assert store.count_merchant_payments_by_state() == {"PENDING": 1}

    def test_failed_verification_starts_nothing(self, chaining_orchestrator, gateway):
        started = chaining_orchestrator.start_verification(MERCHANT_ID, PAYER, Decimal("1500"))
        chaining_orchestrator.reconcile_callback(StubGateway.failure_callback(started.correlation_token))

        assert gateway.requests_to(MERCHANT_PAYBILL) == []

    def test_merchant_settlement_records_entitlement(self, chaining_orchestrator, store, recorder):
        started = _settle(chaining_orchestrator)
        payment = store.latest_merchant_payment(started.session_id)

        result = chaining_orchestrator.reconcile_callback(
            StubGateway.success_callback(payment.correlation_token, "MRCPT1", amount=1500)
        )

        assert result.status == CallbackStatus.PROCESSED
        assert result.channel == "merchant_payment"
        assert result.merchant_payment_id == payment.merchant_payment_id
        assert store.get_merchant_payment(payment.merchant_payment_id).state == "PAID"
        [entitlement] = store.entitlements_for_session(started.session_id)
        assert entitlement["receipt_reference"] == "MRCPT1"
        assert entitlement["merchant_id"] == MERCHANT_ID
        assert Decimal(str(entitlement["amount"])) == Decimal("1500")
        assert len(recorder.of_type(MerchantPaymentSettled)) == 1

    def test_merchant_redelivery_is_duplicate(self, chaining_orchestrator, store, recorder):
        started = _settle(chaining_orchestrator)
        payment = store.latest_merchant_payment(started.session_id)
        payload = StubGateway.success_callback(payment.correlation_token, "MRCPT1")

        chaining_orchestrator.reconcile_callback(payload)
        again = chaining_orchestrator.reconcile_callback(payload)

        assert again.status == CallbackStatus.DUPLICATE
        assert store.count_entitlements() == 1
        assert len(recorder.of_type(MerchantPaymentSettled)) == 1

    def test_merchant_failure_keeps_session_paid(self, chaining_orchestrator, store, recorder):
        started = _settle(chaining_orchestrator)
        payment = store.latest_merchant_payment(started.session_id)

        result = chaining_orchestrator.reconcile_callback(
            StubGateway.failure_callback(payment.correlation_token)
        )

        assert result.status == CallbackStatus.PROCESSED
        assert result.new_state == "FAILED"
        assert store.get(started.session_id).state == "PAID"
        assert store.count_entitlements() == 0
        assert len(recorder.of_type(MerchantPaymentFailed)) == 1

    def test_merchant_payment_service_reports_unmatched(self, chaining_orchestrator, store):
        service = chaining_orchestrator.merchant_payments

        result = service.reconcile_callback(StubGateway.success_callback("ws_CO_NOPE", "X1"))
        invalid = service.reconcile_callback({"nope": True})

        assert result.status == CallbackStatus.UNMATCHED
        assert invalid.status == CallbackStatus.INVALID
        assert store.count_callbacks_by_disposition() == {"unmatched": 1, "invalid": 1}


class TestMerchantLegErrors:
    """Failures starting the merchant leg."""

    def test_no_collection_account(self, chaining_orchestrator, gateway, store):
        started = _settle(chaining_orchestrator, merchant_id="M-NOACCT")

        payment = store.latest_merchant_payment(started.session_id)
        assert payment.state == "FAILED"
        assert payment.failure_reason == NO_COLLECTION_ACCOUNT
        assert len(gateway.requests) == 1
        assert store.get(started.session_id).state == "PAID"

    def test_gateway_rejection_fails_attempt(self, make_orchestrator, chaining_config, store):
        gateway = MerchantLegGateway(GatewayRejected("Invalid shortcode", "400.002.02"))
        orchestrator = make_orchestrator(config=chaining_config, gateway_override=gateway)

        started = _settle(orchestrator)

        payment = store.latest_merchant_payment(started.session_id)
        assert payment.state == "FAILED"
        assert payment.failure_reason == "Invalid shortcode"
        assert store.get(started.session_id).state == "PAID"

    def test_gateway_timeout_leaves_attempt_pending(self, make_orchestrator, chaining_config, store):
        gateway = MerchantLegGateway(GatewayTimeout("slow"))
        orchestrator = make_orchestrator(config=chaining_config, gateway_override=gateway)

        started = _settle(orchestrator)

        payment = store.latest_merchant_payment(started.session_id)
        assert payment.state == "PENDING"
        assert payment.correlation_token is None

    def test_token_collision_leaves_attempt_pending(self, make_orchestrator, chaining_config, db):
        class TokenCollisionStore(SessionStore):
            def attach_merchant_payment_token(self, merchant_payment_id, token):
                raise IntegrityError("UPDATE merchant_payment", {}, Exception("unique"))

        store = TokenCollisionStore(db)
        orchestrator = make_orchestrator(config=chaining_config, store=store)
        started = orchestrator.start_verification(MERCHANT_ID, PAYER, Decimal("1500"))

        result = orchestrator.reconcile_callback(
            StubGateway.success_callback(started.correlation_token, "RCPT1")
        )

        assert result.status == CallbackStatus.PROCESSED
        assert store.get(started.session_id).state == "PAID"
        payment = store.latest_merchant_payment(started.session_id)
        assert payment.state == "PENDING"
        assert payment.correlation_token is None

        settled = orchestrator.reconcile_callback(
            StubGateway.success_callback(
                "ws_CO_NEVER_ATTACHED", "MRCPT1", client_reference=payment.client_reference
            )
        )
        assert settled.status == CallbackStatus.PROCESSED
        assert settled.channel == "merchant_payment"
        assert store.count_entitlements() == 1

    def test_store_failure_on_merchant_callback(self, make_orchestrator, chaining_config, db):
        class FailingStore(SessionStore):
            def mark_merchant_payment_paid(self, *args, **kwargs):
                raise PersistenceError("database unavailable")

        store = FailingStore(db)
        orchestrator = make_orchestrator(config=chaining_config, store=store)
        started = _settle(orchestrator)
        payment = store.latest_merchant_payment(started.session_id)

        result = orchestrator.merchant_payments.reconcile_callback(
            StubGateway.success_callback(payment.correlation_token, "MRCPT1")
        )

        assert result.status == CallbackStatus.ERROR
        assert result.channel == "merchant_payment"
        assert store.get_merchant_payment(payment.merchant_payment_id).state == "PENDING"
        assert store.count_entitlements() == 0


class TestRetry:
    """Retrying a failed merchant payment."""

    def _failed_attempt(self, orchestrator, store):
        started = _settle(orchestrator)
        payment = store.latest_merchant_payment(started.session_id)
        orchestrator.reconcile_callback(StubGateway.failure_callback(payment.correlation_token))
        return started

    def test_retry_after_failure(self, chaining_orchestrator, gateway, store):
        started = self._failed_attempt(chaining_orchestrator, store)

        record = chaining_orchestrator.merchant_payments.retry(started.session_id)

        assert record.attempt == 2
        assert record.state == "PENDING"
        assert len(gateway.requests_to(MERCHANT_PAYBILL)) == 2

    def test_retry_refused_while_pending(self, chaining_orchestrator):
        started = _settle(chaining_orchestrator)
        with pytest.raises(MerchantPaymentNotRetryable, match="attempt 1 is PENDING"):
            chaining_orchestrator.merchant_payments.retry(started.session_id)

    def test_retry_refused_after_settlement(self, chaining_orchestrator, store):
        started = self._failed_attempt(chaining_orchestrator, store)
        record = chaining_orchestrator.merchant_payments.retry(started.session_id)
        chaining_orchestrator.reconcile_callback(
            StubGateway.success_callback(record.correlation_token, "MRCPT1")
        )

        with pytest.raises(MerchantPaymentNotRetryable, match="already settled"):
            chaining_orchestrator.merchant_payments.retry(started.session_id)

    def test_retry_refused_for_unpaid_session(self, chaining_orchestrator):
        started = chaining_orchestrator.start_verification(MERCHANT_ID, PAYER, Decimal("1500"))
        with pytest.raises(MerchantPaymentNotRetryable, match="not PAID"):
            chaining_orchestrator.merchant_payments.retry(started.session_id)

    def test_retry_unknown_session(self, chaining_orchestrator):
        with pytest.raises(NotFound):
            chaining_orchestrator.merchant_payments.retry(uuid4())
