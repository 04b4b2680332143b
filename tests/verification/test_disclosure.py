"""Tests for the disclosure gate."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from konfirmpay.models import Merchant
from konfirmpay.verification.errors import NotFound, VerificationRequired
from konfirmpay.verification.gateway import StubGateway
from tests.conftest import MERCHANT_ID, MERCHANT_NAME, MERCHANT_PAYBILL


class TestDisclosureGate:
    """Merchant details are released only for PAID sessions."""

    def test_pending_requires_verification(self, disclosure, started):
        with pytest.raises(VerificationRequired, match="Verification required"):
            disclosure.get_status(started.session_id)

    def test_failed_requires_verification(self, disclosure, orchestrator, started):
        orchestrator.reconcile_callback(StubGateway.failure_callback(started.correlation_token))
        with pytest.raises(VerificationRequired):
            disclosure.get_status(started.session_id)

    def test_paid_discloses_merchant_and_intended_amount(self, disclosure, orchestrator, started):
        orchestrator.reconcile_callback(StubGateway.success_callback(started.correlation_token, "RCPT1"))

        result = disclosure.get_status(started.session_id)

        assert result.merchant.name == MERCHANT_NAME
        assert result.merchant.paybill == MERCHANT_PAYBILL
        assert result.intended_amount == Decimal("1500")
        assert result.to_dict() == {
            "merchant": {"name": MERCHANT_NAME, "paybill": MERCHANT_PAYBILL},
            "amount": Decimal("1500"),
        }

    def test_string_session_id(self, disclosure, orchestrator, started):
        orchestrator.reconcile_callback(StubGateway.success_callback(started.correlation_token, "RCPT1"))
        assert disclosure.get_status(str(started.session_id)).session_id == started.session_id

    @pytest.mark.parametrize("session_id", [uuid4(), "not-a-uuid", ""])
    def test_unknown_session(self, disclosure, session_id):
        with pytest.raises(NotFound):
            disclosure.get_status(session_id)

    def test_delisted_merchant(self, disclosure, orchestrator, started, db):
        orchestrator.reconcile_callback(StubGateway.success_callback(started.correlation_token, "RCPT1"))
        db.execute(update(Merchant).where(Merchant.id == MERCHANT_ID).values(active=False))
        db.commit()

        with pytest.raises(NotFound, match="no longer listed"):
            disclosure.get_status(started.session_id)

    def test_status_query_is_read_only(self, disclosure, started, store):
        with pytest.raises(VerificationRequired):
            disclosure.get_status(started.session_id)
        assert store.get(started.session_id).state == "PENDING"
        assert store.count_callbacks_by_disposition() == {}
