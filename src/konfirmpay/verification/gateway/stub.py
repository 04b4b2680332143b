"""Stub gateway for local development and testing.

Replace with DarajaGateway for real M-Pesa traffic. The stub never contacts
a payer; outcomes are simulated by posting the payloads built by
``success_callback`` / ``failure_callback`` / ``interim_callback`` to the
callback endpoint (or passing them straight to the orchestrator).
"""

from __future__ import annotations

import datetime
import itertools
from typing import Any

from konfirmpay.verification.errors import GatewayError
from konfirmpay.verification.gateway.base import PaymentRequestResult


class StubGateway:
    """Stub gateway for development.

    In production, this would:
    - Authenticate with the gateway
    - Push a payment prompt to the payer's phone
    - Return the gateway correlation token
    """

    gateway_name = "stub"

    def __init__(self, fail_with: GatewayError | None = None):
        """Initialize stub gateway.

        Args:
            fail_with: If set, every request raises this error instead of
                being accepted.
        """
        self.fail_with = fail_with
        # In-memory tracking for stub
        self.requests: list[dict[str, Any]] = []
        self._sequence = itertools.count(1)

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
        """Record the request and hand back a fresh correlation token."""
        request = {
            "payer_contact": payer_contact,
            "amount": amount,
            "client_reference": client_reference,
            "destination": destination,
            "callback_url": callback_url,
            "description": description,
            "requested_at": datetime.datetime.now(datetime.timezone.utc),
        }
        self.requests.append(request)

        if self.fail_with is not None:
            raise self.fail_with

        n = next(self._sequence)
        token = f"ws_CO_STUB{n:08d}"
        request["correlation_token"] = token
        return PaymentRequestResult(
            correlation_token=token,
            client_reference=client_reference,
            message="Stub accepted",
            merchant_request_id=f"STUB-{n}",
        )

    def requests_to(self, destination: str | None) -> list[dict[str, Any]]:
        """Requests addressed to a collection account (None = our own)."""
        return [r for r in self.requests if r["destination"] == destination]

    def close(self) -> None:
        pass

    # -- callback simulation -------------------------------------------------

    @staticmethod
    def success_callback(
        correlation_token: str,
        receipt: str,
        *,
        amount: int | None = None,
        client_reference: str | None = None,
        phone: str = "254700000000",
    ) -> dict[str, Any]:
        """Daraja-shaped callback for a completed payment."""
        items: list[dict[str, Any]] = [{"Name": "MpesaReceiptNumber", "Value": receipt}]
        if amount is not None:
            items.insert(0, {"Name": "Amount", "Value": amount})
        if client_reference is not None:
            items.append({"Name": "AccountReference", "Value": client_reference})
        items.append({"Name": "TransactionDate", "Value": 20240101120000})
        items.append({"Name": "PhoneNumber", "Value": int(phone)})
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "STUB",
                    "CheckoutRequestID": correlation_token,
                    "ResultCode": 0,
                    "ResultDesc": "The service request is processed successfully.",
                    "CallbackMetadata": {"Item": items},
                }
            }
        }

    @staticmethod
    def failure_callback(
        correlation_token: str,
        result_code: int = 1032,
        description: str = "Request cancelled by user",
    ) -> dict[str, Any]:
        """Daraja-shaped callback for a failed or cancelled payment."""
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "STUB",
                    "CheckoutRequestID": correlation_token,
                    "ResultCode": result_code,
                    "ResultDesc": description,
                }
            }
        }

    @staticmethod
    def interim_callback(
        correlation_token: str,
        result_code: int | str = 4999,
    ) -> dict[str, Any]:
        """Daraja-shaped callback for a payment still being processed."""
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "STUB",
                    "CheckoutRequestID": correlation_token,
                    "ResultCode": result_code,
                    "ResultDesc": "The transaction is still under processing",
                }
            }
        }


class AsyncStubGateway(StubGateway):
    """Async version of StubGateway."""

    async def request_payment(  # type: ignore[override]
        self,
        payer_contact: str,
        amount: int,
        client_reference: str,
        *,
        destination: str | None = None,
        callback_url: str | None = None,
        description: str = "",
    ) -> PaymentRequestResult:
        return StubGateway.request_payment(
            self,
            payer_contact,
            amount,
            client_reference,
            destination=destination,
            callback_url=callback_url,
            description=description,
        )

    async def aclose(self) -> None:
        pass
