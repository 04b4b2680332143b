"""Payment gateway adapters."""

from konfirmpay.verification.gateway.base import (
    AsyncPaymentGateway,
    PaymentGateway,
    PaymentRequestResult,
)
from konfirmpay.verification.gateway.daraja import AsyncDarajaGateway, DarajaGateway
from konfirmpay.verification.gateway.stub import AsyncStubGateway, StubGateway

__all__ = [
    "PaymentGateway",
    "AsyncPaymentGateway",
    "PaymentRequestResult",
    "DarajaGateway",
    "AsyncDarajaGateway",
    "StubGateway",
    "AsyncStubGateway",
]
