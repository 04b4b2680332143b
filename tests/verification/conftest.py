"""Fixtures for verification service tests."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from konfirmpay.verification.config import VerificationConfig
from konfirmpay.verification.events import EventEmitter
from konfirmpay.verification.fees import FeePolicy
from konfirmpay.verification.gateway import StubGateway
from konfirmpay.verification.services import (
    DisclosureGate,
    MerchantDirectory,
    MerchantPaymentService,
    SessionStore,
    StartResult,
    VerificationOrchestrator,
)
from tests.conftest import MERCHANT_ID, PAYER

OrchestratorFactory = Callable[..., VerificationOrchestrator]


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def store(db: Session) -> SessionStore:
    return SessionStore(db)


@pytest.fixture
def directory(db: Session) -> MerchantDirectory:
    return MerchantDirectory(db)


@pytest.fixture
def make_orchestrator(
    db: Session,
    gateway: StubGateway,
    emitter: EventEmitter,
) -> OrchestratorFactory:
    """Build an orchestrator over the test database.

    Pass ``store`` to substitute a store wrapper, ``config`` for other
    settings, and ``gateway`` for a different stub.
    """

    def factory(
        config: VerificationConfig | None = None,
        store: SessionStore | None = None,
        gateway_override: StubGateway | None = None,
    ) -> VerificationOrchestrator:
        config = config or VerificationConfig()
        store = store or SessionStore(db)
        directory = MerchantDirectory(store.db)
        gw = gateway_override or gateway
        merchant_payments = MerchantPaymentService(
            store, directory, gw, config, emitter=emitter, callback_url="https://example.test/mp"
        )
        return VerificationOrchestrator(
            store,
            directory,
            gw,
            FeePolicy(config.fee_bands),
            config,
            emitter=emitter,
            merchant_payments=merchant_payments,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator: OrchestratorFactory) -> VerificationOrchestrator:
    return make_orchestrator()


@pytest.fixture
def chaining_orchestrator(
    make_orchestrator: OrchestratorFactory,
    chaining_config: VerificationConfig,
) -> VerificationOrchestrator:
    return make_orchestrator(config=chaining_config)


@pytest.fixture
def disclosure(store: SessionStore, directory: MerchantDirectory) -> DisclosureGate:
    return DisclosureGate(store, directory)


@pytest.fixture
def started(orchestrator: VerificationOrchestrator) -> StartResult:
    """A PENDING session for 1500 with its token attached."""
    return orchestrator.start_verification(MERCHANT_ID, PAYER, Decimal("1500"))
