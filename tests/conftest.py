"""Shared fixtures for KonfirmPay tests.

Service tests run against in-memory SQLite through a single shared
connection, so every Session in a test sees the same database.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from konfirmpay.models import Base, Merchant
from konfirmpay.verification.config import VerificationConfig
from konfirmpay.verification.events import EventEmitter, EventRecorder

MERCHANT_ID = "M-001"
MERCHANT_NAME = "Mama Mboga Traders"
MERCHANT_PAYBILL = "400200"

PAYER = "254712345678"


def seed_merchants(conn_or_session) -> None:  # type: ignore[no-untyped-def]
    """Insert the fixture merchants: one active, one without a paybill, one inactive."""
    conn_or_session.execute(
        insert(Merchant),
        [
            {"id": MERCHANT_ID, "name": MERCHANT_NAME, "paybill": MERCHANT_PAYBILL, "active": True},
            {"id": "M-NOACCT", "name": "No Account Ltd", "paybill": "", "active": True},
            {"id": "M-GONE", "name": "Closed Shop", "paybill": "999999", "active": False},
        ],
    )


@pytest.fixture
def sync_engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        seed_merchants(session)
        session.commit()
    yield engine
    engine.dispose()


@pytest.fixture
def db(sync_engine: Engine) -> Generator[Session, None, None]:
    """Session for the code under test."""
    with Session(sync_engine, expire_on_commit=False, autoflush=False) as session:
        yield session
        session.rollback()


@pytest.fixture
def config() -> VerificationConfig:
    return VerificationConfig()


@pytest.fixture
def chaining_config() -> VerificationConfig:
    return VerificationConfig(merchant_chaining=True)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def emitter(recorder: EventRecorder) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(recorder)
    return emitter
