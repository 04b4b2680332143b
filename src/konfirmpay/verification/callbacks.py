"""Inbound gateway callback parsing.

Daraja posts the outcome of an STK push as:

    {
      "Body": {
        "stkCallback": {
          "MerchantRequestID": "29115-34620561-1",
          "CheckoutRequestID": "ws_CO_191220191020363925",
          "ResultCode": 0,
          "ResultDesc": "The service request is processed successfully.",
          "CallbackMetadata": {
            "Item": [
              {"Name": "Amount", "Value": 15},
              {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
              {"Name": "TransactionDate", "Value": 20191219102115},
              {"Name": "PhoneNumber", "Value": 254708374149}
            ]
          }
        }
      }
    }

Failures carry a non-zero ResultCode and no metadata. The parser turns the
envelope into a ``GatewayCallback`` and classifies it; it never touches the
store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from konfirmpay.verification.errors import CallbackParseError

logger = logging.getLogger(__name__)

RECEIPT_FIELD = "MpesaReceiptNumber"
REFERENCE_FIELDS = ("AccountReference", "BillRefNumber")

ACKNOWLEDGEMENT: dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Accepted"}

VERIFICATION_CHANNEL = "verification"
MERCHANT_PAYMENT_CHANNEL = "merchant_payment"


class CallbackOutcome(str, Enum):
    """What a callback says about its payment request."""

    SUCCESS = "success"
    FAILURE = "failure"
    INTERIM = "interim"


@dataclass(frozen=True)
class GatewayCallback:
    """A parsed payment-request callback."""

    correlation_token: str
    result_code: str
    result_description: str
    outcome: CallbackOutcome
    receipt_reference: str | None = None
    client_reference: str | None = None
    amount: Decimal | None = None
    merchant_request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """True for success or failure, False for interim checkpoints."""
        return self.outcome != CallbackOutcome.INTERIM


def acknowledgement() -> dict[str, Any]:
    """Fixed envelope returned to the gateway for every processed callback."""
    return dict(ACKNOWLEDGEMENT)


def _metadata_items(stk: dict[str, Any]) -> dict[str, Any]:
    """Flatten CallbackMetadata.Item into a name -> value mapping."""
    meta = stk.get("CallbackMetadata") or {}
    if not isinstance(meta, dict):
        raise CallbackParseError("CallbackMetadata is not an object")
    items = meta.get("Item") or []
    if not isinstance(items, list):
        raise CallbackParseError("CallbackMetadata.Item is not a list")

    values: dict[str, Any] = {}
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            values[str(item["Name"])] = item.get("Value")
    return values


def parse_callback(
    payload: Any,
    *,
    success_code: str = "0",
    interim_codes: frozenset[str] = frozenset(),
) -> GatewayCallback:
    """Parse a Daraja STK callback envelope.

    Args:
        payload: Decoded JSON body.
        success_code: Result code meaning the payment completed.
        interim_codes: Result codes meaning the flow is still in progress.

    Returns:
        GatewayCallback with its outcome classified.

    Raises:
        CallbackParseError: If the payload is not a recognised envelope.
    """
    if not isinstance(payload, dict):
        raise CallbackParseError("Callback body is not an object")
    body = payload.get("Body")
    if not isinstance(body, dict):
        raise CallbackParseError("Callback has no Body")
    stk = body.get("stkCallback")
    if not isinstance(stk, dict):
        raise CallbackParseError("Callback has no Body.stkCallback")

    token = stk.get("CheckoutRequestID")
    if not token or not isinstance(token, str):
        raise CallbackParseError("Callback has no CheckoutRequestID")

    raw_code = stk.get("ResultCode")
    if raw_code is None or isinstance(raw_code, bool):
        raise CallbackParseError("Callback has no ResultCode")
    result_code = str(raw_code).strip()
    if not result_code:
        raise CallbackParseError("Callback has an empty ResultCode")

    metadata = _metadata_items(stk)
    receipt = metadata.get(RECEIPT_FIELD)
    receipt = str(receipt).strip() if receipt not in (None, "") else None

    client_reference = None
    for name in REFERENCE_FIELDS:
        if metadata.get(name) not in (None, ""):
            client_reference = str(metadata[name]).strip()
            break

    amount = None
    if metadata.get("Amount") is not None:
        try:
            amount = Decimal(str(metadata["Amount"]))
        except InvalidOperation:
            amount = None

    if result_code in interim_codes:
        outcome = CallbackOutcome.INTERIM
    elif result_code == success_code:
        # A completed result without a settlement receipt is only a checkpoint.
        outcome = CallbackOutcome.SUCCESS if receipt else CallbackOutcome.INTERIM
    else:
        outcome = CallbackOutcome.FAILURE

    return GatewayCallback(
        correlation_token=token.strip(),
        result_code=result_code,
        result_description=str(stk.get("ResultDesc") or ""),
        outcome=outcome,
        receipt_reference=receipt,
        client_reference=client_reference,
        amount=amount,
        merchant_request_id=stk.get("MerchantRequestID"),
        metadata=metadata,
    )


class CallbackStatus(str, Enum):
    """What reconciliation did with a callback.

    The value doubles as the disposition recorded in the callback inbox.
    """

    PROCESSED = "processed"  # Moved a PENDING record to a terminal state
    DUPLICATE = "duplicate"  # Record already terminal (idempotent redelivery)
    INTERIM = "interim"  # Still in progress, nothing changed
    UNMATCHED = "unmatched"  # No session or payment for this token
    INVALID = "invalid"  # Not a recognised envelope
    CONFLICT = "conflict"  # Receipt already belongs to another record
    ERROR = "error"  # Outcome could not be stored; logged for replay, not recorded


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of reconciling one callback."""

    status: CallbackStatus
    channel: str
    correlation_token: str | None = None
    session_id: UUID | None = None
    merchant_payment_id: UUID | None = None
    previous_state: str | None = None
    new_state: str | None = None
    message: str = ""

    @property
    def changed_state(self) -> bool:
        return self.status == CallbackStatus.PROCESSED


def store_failure(channel: str, payload: Any, exc: Exception) -> CallbackResult:
    """Result for a callback whose outcome could not be stored.

    The transaction is already rolled back and the gateway is still
    acknowledged, so the log line carries what an operator needs to replay
    the callback.
    """
    try:
        callback = parse_callback(payload)
    except CallbackParseError:
        logger.error("Could not store %s callback %r: %s", channel, payload, exc)
        return CallbackResult(status=CallbackStatus.ERROR, channel=channel, message=str(exc))

    logger.error(
        "Could not store %s callback %s (reference %s, result %s, receipt %s): %s",
        channel,
        callback.correlation_token,
        callback.client_reference,
        callback.result_code,
        callback.receipt_reference,
        exc,
    )
    return CallbackResult(
        status=CallbackStatus.ERROR,
        channel=channel,
        correlation_token=callback.correlation_token,
        message=str(exc),
    )
