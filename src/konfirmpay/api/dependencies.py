"""FastAPI dependencies for dependency injection."""

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from konfirmpay.config import Settings
from konfirmpay.database import init_db
from konfirmpay.verification.events import EventEmitter
from konfirmpay.verification.fees import FeePolicy
from konfirmpay.verification.gateway import AsyncPaymentGateway
from konfirmpay.verification.services import (
    AsyncDisclosureGate,
    AsyncMerchantDirectory,
    AsyncMerchantPaymentService,
    AsyncSessionStore,
    AsyncVerificationOrchestrator,
)

logger = logging.getLogger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> AsyncPaymentGateway:
    return request.app.state.gateway


def get_emitter(request: Request) -> EventEmitter:
    return request.app.state.emitter


def get_fee_policy(request: Request) -> FeePolicy:
    return request.app.state.fee_policy


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Gateway = Annotated[AsyncPaymentGateway, Depends(get_gateway)]
Emitter = Annotated[EventEmitter, Depends(get_emitter)]


def get_merchant_payments(
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
    emitter: Emitter,
) -> AsyncMerchantPaymentService:
    """Merchant payment leg bound to this request's session."""
    return AsyncMerchantPaymentService(
        AsyncSessionStore(db),
        AsyncMerchantDirectory(db),
        gateway,
        settings.verification,
        emitter=emitter,
        callback_url=settings.merchant_callback_url,
    )


MerchantPayments = Annotated[AsyncMerchantPaymentService, Depends(get_merchant_payments)]


def get_orchestrator(
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
    emitter: Emitter,
    fee_policy: Annotated[FeePolicy, Depends(get_fee_policy)],
    merchant_payments: MerchantPayments,
) -> AsyncVerificationOrchestrator:
    """Orchestrator bound to this request's session."""
    return AsyncVerificationOrchestrator(
        merchant_payments.store,
        merchant_payments.directory,
        gateway,
        fee_policy,
        settings.verification,
        emitter=emitter,
        merchant_payments=merchant_payments,
    )


def get_disclosure_gate(db: DbSession) -> AsyncDisclosureGate:
    return AsyncDisclosureGate(AsyncSessionStore(db), AsyncMerchantDirectory(db))


async def verify_callback_source(
    request: Request,
    settings: AppSettings,
    token: Annotated[str | None, Query()] = None,
) -> None:
    """Reject callbacks from unexpected sources when checks are configured."""
    security = settings.verification.callback_security
    if not security.enabled:
        return

    client_ip = request.client.host if request.client else ""
    if security.allowed_ips and client_ip not in security.allowed_ips:
        logger.warning("Rejected callback from %s: address not allowed", client_ip)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    if security.token and not hmac.compare_digest(token or "", security.token):
        logger.warning("Rejected callback from %s: bad token", client_ip)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


Orchestrator = Annotated[AsyncVerificationOrchestrator, Depends(get_orchestrator)]
Disclosure = Annotated[AsyncDisclosureGate, Depends(get_disclosure_gate)]
CallbackGuard = Depends(verify_callback_source)
