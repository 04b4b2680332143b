"""M-Pesa Daraja gateway adapter (Lipa Na M-Pesa Online / STK push).

Two calls are involved:
- OAuth client-credentials exchange for a short-lived bearer token
- ``/mpesa/stkpush/v1/processrequest`` to prompt the payer

The bearer token is process-wide state: fetched lazily, cached until shortly
before it expires, refreshed by a single caller while concurrent callers
wait for that refresh.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from konfirmpay.verification.config import DarajaConfig
from konfirmpay.verification.errors import (
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
)
from konfirmpay.verification.gateway.base import PaymentRequestResult

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# Daraja timestamps are East Africa Time, which has no daylight saving.
EAT = timezone(timedelta(hours=3), name="EAT")


@dataclass(frozen=True)
class AccessToken:
    """Cached OAuth bearer token."""

    value: str
    expires_at: float  # clock() reading after which the token is stale

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


def _timeout_error(path: str) -> GatewayUnavailable:
    # No push is sent until the token call returns.
    if path == TOKEN_PATH:
        return GatewayUnavailable(f"Daraja {path} timed out")
    return GatewayTimeout(f"Daraja {path} timed out")


class _DarajaProtocol:
    """Request building and response mapping shared by sync and async adapters."""

    gateway_name = "daraja"

    def __init__(self, config: DarajaConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._token: AccessToken | None = None

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.config.timeout_seconds)

    def _basic_auth(self) -> str:
        raw = f"{self.config.consumer_key}:{self.config.consumer_secret}".encode()
        return "Basic " + base64.b64encode(raw).decode()

    def _cached_token(self) -> str | None:
        token = self._token
        if token is not None and token.is_fresh(self._clock()):
            return token.value
        return None

    def _store_token(self, response: httpx.Response) -> str:
        if response.status_code in (400, 401, 403):
            raise GatewayRejected(
                f"Daraja authentication failed with HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise GatewayUnavailable(f"Daraja token endpoint returned HTTP {response.status_code}")
        try:
            data = response.json()
            value = data["access_token"]
            expires_in = int(data.get("expires_in", 3599))
        except (ValueError, KeyError, TypeError) as exc:
            raise GatewayUnavailable("Daraja token response is malformed") from exc

        ttl = max(expires_in - self.config.token_refresh_margin_seconds, 1)
        self._token = AccessToken(value=value, expires_at=self._clock() + ttl)
        logger.debug("Daraja access token refreshed, valid for %ss", ttl)
        return value

    def invalidate_token(self) -> None:
        """Drop the cached token so the next call re-authenticates."""
        self._token = None

    @staticmethod
    def timestamp(now: datetime | None = None) -> str:
        """Daraja ``YYYYMMDDHHMMSS`` timestamp in EAT."""
        now = now or datetime.now(EAT)
        return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        raw = f"{self.config.shortcode}{self.config.passkey}{timestamp}".encode()
        return base64.b64encode(raw).decode()

    def build_stk_request(
        self,
        payer_contact: str,
        amount: int,
        client_reference: str,
        *,
        destination: str | None = None,
        callback_url: str | None = None,
        description: str = "",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Build the STK push request body."""
        timestamp = self.timestamp(now)
        return {
            "BusinessShortCode": self.config.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": payer_contact,
            "PartyB": destination or self.config.shortcode,
            "PhoneNumber": payer_contact,
            "CallBackURL": callback_url or self.config.callback_url,
            "AccountReference": client_reference,
            "TransactionDesc": description or "KonfirmPay Verification Fee",
        }

    def _map_stk_response(
        self,
        response: httpx.Response,
        client_reference: str,
    ) -> PaymentRequestResult:
        if response.status_code == 401:
            self.invalidate_token()
            raise GatewayUnavailable("Daraja rejected the access token")
        if response.status_code >= 500:
            raise GatewayUnavailable(f"Daraja returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayUnavailable("Daraja response is not JSON") from exc
        if not isinstance(data, dict):
            raise GatewayUnavailable("Daraja response is not an object")

        if response.status_code >= 400:
            raise GatewayRejected(
                str(data.get("errorMessage") or f"HTTP {response.status_code}"),
                response_code=data.get("errorCode"),
            )

        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0":
            raise GatewayRejected(
                str(data.get("ResponseDescription") or "Payment request rejected"),
                response_code=response_code or None,
            )

        token = data.get("CheckoutRequestID")
        if not token:
            raise GatewayRejected("Daraja response has no CheckoutRequestID")

        return PaymentRequestResult(
            correlation_token=str(token),
            client_reference=client_reference,
            message=str(data.get("CustomerMessage") or data.get("ResponseDescription") or ""),
            merchant_request_id=data.get("MerchantRequestID"),
            raw_response=data,
        )


class DarajaGateway(_DarajaProtocol):
    """Synchronous Daraja adapter built on httpx.Client."""

    def __init__(
        self,
        config: DarajaConfig,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config, clock)
        self._client = client or httpx.Client(base_url=config.base_url, timeout=self._timeout())
        self._lock = threading.Lock()

    def access_token(self) -> str:
        """Return a valid bearer token, refreshing it once if stale."""
        cached = self._cached_token()
        if cached:
            return cached
        with self._lock:
            # Another thread may have refreshed while we waited.
            cached = self._cached_token()
            if cached:
                return cached
            response = self._send(
                "GET",
                TOKEN_PATH,
                params={"grant_type": "client_credentials"},
                headers={"Authorization": self._basic_auth()},
            )
            return self._store_token(response)

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
        """Send an STK push."""
        token = self.access_token()
        body = self.build_stk_request(
            payer_contact,
            amount,
            client_reference,
            destination=destination,
            callback_url=callback_url,
            description=description,
        )
        response = self._send(
            "POST",
            STK_PUSH_PATH,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        return self._map_stk_response(response, client_reference)

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, timeout=self._timeout(), **kwargs)
        except httpx.TimeoutException as exc:
            raise _timeout_error(path) from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"Daraja {path} unreachable: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class AsyncDarajaGateway(_DarajaProtocol):
    """Async Daraja adapter built on httpx.AsyncClient."""

    def __init__(
        self,
        config: DarajaConfig,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config, clock)
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url, timeout=self._timeout()
        )
        self._lock: asyncio.Lock | None = None

    async def access_token(self) -> str:
        """Return a valid bearer token, refreshing it once if stale."""
        cached = self._cached_token()
        if cached:
            return cached
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            cached = self._cached_token()
            if cached:
                return cached
            response = await self._send(
                "GET",
                TOKEN_PATH,
                params={"grant_type": "client_credentials"},
                headers={"Authorization": self._basic_auth()},
            )
            return self._store_token(response)

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
        """Send an STK push."""
        token = await self.access_token()
        body = self.build_stk_request(
            payer_contact,
            amount,
            client_reference,
            destination=destination,
            callback_url=callback_url,
            description=description,
        )
        response = await self._send(
            "POST",
            STK_PUSH_PATH,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        return self._map_stk_response(response, client_reference)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, timeout=self._timeout(), **kwargs)
        except httpx.TimeoutException as exc:
            raise _timeout_error(path) from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"Daraja {path} unreachable: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
