"""Tests for callbacks racing on the same session.

A second delivery is injected between the outer callback's lookup and
its conditional update, so both observe the session as PENDING. The
conditional update admits exactly one of them.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from konfirmpay.models import utcnow
from konfirmpay.verification.callbacks import CallbackStatus
from konfirmpay.verification.events import VerificationPaid
from konfirmpay.verification.gateway import StubGateway
from konfirmpay.verification.services import SessionStore, expire_stale_sessions
from tests.conftest import MERCHANT_ID, MERCHANT_PAYBILL, PAYER


class InterleavingStore(SessionStore):
    """Runs ``hook`` once, just before the first terminal update."""

    def __init__(self, db, hook=None):
        super().__init__(db)
        self.hook = hook

    def _interleave(self):
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()

    def mark_paid(self, *args, **kwargs):
        self._interleave()
        return super().mark_paid(*args, **kwargs)

    def mark_failed(self, *args, **kwargs):
        self._interleave()
        return super().mark_failed(*args, **kwargs)


@pytest.fixture
def racing(db, make_orchestrator, chaining_config):
    """(store, orchestrator) whose next terminal update is preceded by a hook."""
    store = InterleavingStore(db)
    return store, make_orchestrator(config=chaining_config, store=store)


@pytest.fixture
def session(make_orchestrator, chaining_config):
    return make_orchestrator(config=chaining_config).start_verification(
        MERCHANT_ID, PAYER, Decimal("1500")
    )


class TestConcurrentSuccess:
    """Two success deliveries for one session."""

    def test_one_winner(self, racing, make_orchestrator, chaining_config, session, gateway, recorder):
        store, outer = racing
        inner = make_orchestrator(config=chaining_config)
        payload = StubGateway.success_callback(session.correlation_token, "RCPT1")
        inner_results = []
        store.hook = lambda: inner_results.append(inner.reconcile_callback(payload))

        outer_result = outer.reconcile_callback(payload)

        assert inner_results[0].status == CallbackStatus.PROCESSED
        assert outer_result.status == CallbackStatus.DUPLICATE
        assert store.get(session.session_id).state == "PAID"
        assert len(recorder.of_type(VerificationPaid)) == 1
        # Only the winner chains the merchant leg.
        assert len(gateway.requests_to(MERCHANT_PAYBILL)) == 1


class TestSuccessAgainstFailure:
    """Opposite outcomes for one session; the first to commit stands."""

    def test_failure_first(self, racing, make_orchestrator, session, gateway):
        store, outer = racing
        inner = make_orchestrator()
        store.hook = lambda: inner.reconcile_callback(
            StubGateway.failure_callback(session.correlation_token)
        )

        result = outer.reconcile_callback(StubGateway.success_callback(session.correlation_token, "RCPT1"))

        assert result.status == CallbackStatus.DUPLICATE
        loaded = store.get(session.session_id)
        assert loaded.state == "FAILED"
        assert loaded.receipt_reference is None
        assert gateway.requests_to(MERCHANT_PAYBILL) == []

    def test_success_first(self, racing, make_orchestrator, session):
        store, outer = racing
        inner = make_orchestrator()
        store.hook = lambda: inner.reconcile_callback(
            StubGateway.success_callback(session.correlation_token, "RCPT1")
        )

        result = outer.reconcile_callback(StubGateway.failure_callback(session.correlation_token))

        assert result.status == CallbackStatus.DUPLICATE
        assert store.get(session.session_id).state == "PAID"


class TestCallbackAgainstExpiry:
    """The expiry sweep and a callback racing for a stale session."""

    def test_expiry_first(self, racing, session, config):
        store, outer = racing
        store.hook = lambda: expire_stale_sessions(
            SessionStore(store.db), config, now=utcnow() + timedelta(hours=1)
        )

        result = outer.reconcile_callback(StubGateway.success_callback(session.correlation_token, "RCPT1"))

        assert result.status == CallbackStatus.DUPLICATE
        assert store.get(session.session_id).state == "FAILED"

    def test_callback_first(self, orchestrator, session, store, config):
        orchestrator.reconcile_callback(StubGateway.success_callback(session.correlation_token, "RCPT1"))

        expired = expire_stale_sessions(store, config, now=utcnow() + timedelta(hours=1))

        assert expired.session_ids == ()
        assert store.get(session.session_id).state == "PAID"
