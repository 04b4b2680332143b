"""Base protocol and types for payment gateways.

All gateway adapters must implement PaymentGateway (sync) or
AsyncPaymentGateway (async).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class PaymentRequestResult:
    """Result of asking the gateway to collect a payment."""

    correlation_token: str
    client_reference: str
    message: str = ""
    merchant_request_id: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    The orchestrator uses these adapters without knowing gateway-specific
    details. Outcomes arrive later through the callback endpoint.
    """

    gateway_name: str

    def request_payment(
        self,
        payer_contact: str,
        amount: int,
        client_reference: str,
        *,
        destination: str | None = None,
        callback_url: str | None = None,
        description: str = "",
    ) -> PaymentRequestResult:
        """Ask the payer to approve a payment.

        Args:
            payer_contact: MSISDN of the payer.
            amount: Whole-unit amount to collect.
            client_reference: Our reference; the gateway echoes it back.
            destination: Collection account. Defaults to our own short code.
            callback_url: Where the outcome is posted. Defaults to the
                verification callback URL.
            description: Free text shown to the payer.

        Returns:
            PaymentRequestResult carrying the gateway correlation token.

        Raises:
            GatewayUnavailable: Gateway unreachable (GatewayTimeout on timeout).
            GatewayRejected: Gateway refused the request.
        """
        ...

    def close(self) -> None:
        """Release network resources."""
        ...


class AsyncPaymentGateway(Protocol):
    """Async version of PaymentGateway."""

    gateway_name: str

    async def request_payment(
        self,
        payer_contact: str,
        amount: int,
        client_reference: str,
        *,
        destination: str | None = None,
        callback_url: str | None = None,
        description: str = "",
    ) -> PaymentRequestResult:
        """Async version of PaymentGateway.request_payment."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
