"""Tests for the session store.

Tests verify:
1. Terminal transitions happen once and only from PENDING
2. Receipts are unique across sessions
3. Entitlements are insert-if-absent per receipt
4. Correlation tokens are attached once
5. Callback lookups fall back to the client reference
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from konfirmpay.models import utcnow
from konfirmpay.verification.services import SessionStore
from konfirmpay.verification.services.session_store import DuplicateReceipt
from tests.conftest import MERCHANT_ID, PAYER


def _create(store: SessionStore, amount: str = "1500", fee: int = 5):
    session = store.create_session(
        merchant_id=MERCHANT_ID,
        payer_contact=PAYER,
        intended_amount=Decimal(amount),
        verification_fee=fee,
    )
    store.commit()
    return session


class TestCreateSession:
    """New sessions."""

    def test_created_pending(self, store):
        session = _create(store)
        loaded = store.get(session.session_id)

        assert loaded is not None
        assert loaded.state == "PENDING"
        assert loaded.intended_amount == Decimal("1500")
        assert loaded.verification_fee == 5
        assert loaded.client_reference == str(session.session_id)
        assert loaded.correlation_token is None
        assert loaded.receipt_reference is None
        assert not loaded.is_terminal

    def test_unknown_session(self, store):
        assert store.get(uuid4()) is None


class TestCorrelationToken:
    """Tokens attach once and drive callback lookups."""

    def test_attach_once(self, store):
        session = _create(store)

        assert store.attach_correlation_token(session.session_id, "ws_CO_A")
        assert not store.attach_correlation_token(session.session_id, "ws_CO_B")
        store.commit()

        assert store.get(session.session_id).correlation_token == "ws_CO_A"

    def test_find_by_token(self, store):
        session = _create(store)
        store.attach_correlation_token(session.session_id, "ws_CO_A")
        store.commit()

        found = store.find_for_callback("ws_CO_A", None)
        assert found is not None
        assert found.session_id == session.session_id

    def test_falls_back_to_client_reference(self, store):
        """A session whose token never got attached is still found."""
        session = _create(store)

        found = store.find_for_callback("ws_CO_UNKNOWN", session.client_reference)
        assert found is not None
        assert found.session_id == session.session_id

    def test_no_match(self, store):
        _create(store)
        assert store.find_for_callback("ws_CO_UNKNOWN", None) is None
        assert store.find_for_callback("ws_CO_UNKNOWN", "nope") is None


class TestTerminalTransitions:
    """Conditional PENDING -> terminal updates."""

    def test_mark_paid(self, store):
        session = _create(store)

        paid = store.mark_paid(session.session_id, "RCPT1")
        store.commit()

        assert paid is not None
        assert paid.state == "PAID"
        assert paid.receipt_reference == "RCPT1"
        assert paid.resolved_at is not None

    def test_mark_paid_twice_returns_none(self, store):
        session = _create(store)
        store.mark_paid(session.session_id, "RCPT1")
        store.commit()

        assert store.mark_paid(session.session_id, "RCPT2") is None
        assert store.get(session.session_id).receipt_reference == "RCPT1"

    def test_failed_never_becomes_paid(self, store):
        session = _create(store)
        assert store.mark_failed(session.session_id, "cancelled") is not None
        store.commit()

        assert store.mark_paid(session.session_id, "RCPT1") is None
        loaded = store.get(session.session_id)
        assert loaded.state == "FAILED"
        assert loaded.failure_reason == "cancelled"

    def test_paid_never_becomes_failed(self, store):
        session = _create(store)
        store.mark_paid(session.session_id, "RCPT1")
        store.commit()

        assert store.mark_failed(session.session_id, "late failure") is None
        assert store.get(session.session_id).state == "PAID"

    def test_receipt_unique_across_sessions(self, store):
        first = _create(store)
        second = _create(store)
        store.mark_paid(first.session_id, "RCPT1")
        store.commit()

        with pytest.raises(DuplicateReceipt):
            store.mark_paid(second.session_id, "RCPT1")
        store.rollback()

        assert store.get(second.session_id).state == "PENDING"


class TestExpiry:
    """Stale PENDING sessions."""

    def test_expire_pending_only(self, store):
        pending = _create(store)
        paid = _create(store)
        store.mark_paid(paid.session_id, "RCPT1")
        store.commit()

        expired = store.expire_pending(utcnow() + timedelta(minutes=1), "expired")
        store.commit()

        assert expired == [pending.session_id]
        assert store.get(pending.session_id).state == "FAILED"
        assert store.get(pending.session_id).failure_reason == "expired"
        assert store.get(paid.session_id).state == "PAID"

    def test_recent_sessions_kept(self, store):
        session = _create(store)
        assert store.expire_pending(utcnow() - timedelta(minutes=30)) == []
        assert store.get(session.session_id).state == "PENDING"

    def test_counts(self, store):
        _create(store)
        paid = _create(store)
        store.mark_paid(paid.session_id, "RCPT1")
        store.commit()

        assert store.count_by_state() == {"PENDING": 1, "PAID": 1}
        assert store.count_stale_pending(utcnow() + timedelta(minutes=1)) == 1
        assert store.count_stale_pending(utcnow() - timedelta(minutes=1)) == 0


class TestEntitlements:
    """One entitlement per receipt."""

    def test_insert_if_absent(self, store):
        session = _create(store)

        kwargs = dict(
            receipt_reference="MRCPT1",
            merchant_id=MERCHANT_ID,
            session_id=session.session_id,
            amount=Decimal("1500"),
        )
        assert store.insert_entitlement_if_absent(**kwargs)
        assert not store.insert_entitlement_if_absent(**kwargs)
        store.commit()

        rows = store.entitlements_for_session(session.session_id)
        assert len(rows) == 1
        assert rows[0]["receipt_reference"] == "MRCPT1"
        assert store.count_entitlements() == 1


class TestMerchantPayments:
    """Merchant payment attempts."""

    def test_attempt_unique_per_session(self, store):
        session = _create(store)

        first = store.create_merchant_payment(session=session, attempt=1, destination="400200")
        again = store.create_merchant_payment(session=session, attempt=1, destination="400200")
        store.commit()

        assert first is not None
        assert first.state == "PENDING"
        assert first.amount == Decimal("1500")
        assert first.client_reference == f"MP-{first.merchant_payment_id}"
        assert again is None

    def test_latest_attempt(self, store):
        session = _create(store)
        first = store.create_merchant_payment(session=session, attempt=1, destination="400200")
        store.mark_merchant_payment_failed(first.merchant_payment_id, "cancelled")
        second = store.create_merchant_payment(session=session, attempt=2, destination="400200")
        store.commit()

        latest = store.latest_merchant_payment(session.session_id)
        assert latest.merchant_payment_id == second.merchant_payment_id
        assert latest.attempt == 2

    def test_lookup_by_token_or_reference(self, store):
        session = _create(store)
        payment = store.create_merchant_payment(session=session, attempt=1, destination="400200")
        store.attach_merchant_payment_token(payment.merchant_payment_id, "ws_CO_MP")
        store.commit()

        by_token = store.find_merchant_payment_for_callback("ws_CO_MP", None)
        by_reference = store.find_merchant_payment_for_callback("other", payment.client_reference)
        assert by_token.merchant_payment_id == payment.merchant_payment_id
        assert by_reference.merchant_payment_id == payment.merchant_payment_id

    def test_transitions_guarded(self, store):
        session = _create(store)
        payment = store.create_merchant_payment(session=session, attempt=1, destination="400200")

        assert store.mark_merchant_payment_paid(payment.merchant_payment_id, "MRCPT1") is not None
        assert store.mark_merchant_payment_failed(payment.merchant_payment_id, "late") is None
        store.commit()

        assert store.get_merchant_payment(payment.merchant_payment_id).state == "PAID"
        assert store.count_merchant_payments_by_state() == {"PAID": 1}


class TestCallbackInbox:
    """Every callback is recorded with its disposition."""

    def test_record_and_list(self, store):
        store.record_callback(channel="verification", disposition="unmatched", payload={"a": 1})
        store.record_callback(channel="verification", disposition="processed", payload={"b": 2})
        store.record_callback(channel="verification", disposition="invalid", payload="junk")
        store.commit()

        unmatched = store.callbacks_with_disposition("unmatched")
        invalid = store.callbacks_with_disposition("invalid")

        assert len(unmatched) == 1
        assert unmatched[0]["payload_json"] == {"a": 1}
        assert invalid[0]["payload_json"] == {"raw": "'junk'"}
        assert store.count_callbacks_by_disposition() == {
            "unmatched": 1,
            "processed": 1,
            "invalid": 1,
        }
