"""Gateway callback endpoints.

Every callback with a JSON body is acknowledged with the fixed envelope,
whatever its outcome, including a store failure. Only a body that is not
JSON gets a 400.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Request

from konfirmpay.api.dependencies import CallbackGuard, MerchantPayments, Orchestrator
from konfirmpay.api.schemas import CallbackAcknowledgement
from konfirmpay.verification.callbacks import acknowledgement
from konfirmpay.verification.errors import CallbackParseError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpesa", tags=["callbacks"], dependencies=[CallbackGuard])


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Callback body is not JSON (%d bytes)", len(raw))
        raise CallbackParseError("Callback body is not JSON") from exc


@router.post("/callback", response_model=CallbackAcknowledgement)
async def verification_callback(request: Request, orchestrator: Orchestrator) -> dict[str, Any]:
    """Verification fee callback; also accepts merchant-leg callbacks."""
    payload = await _json_body(request)
    result = await orchestrator.reconcile_callback(payload)
    logger.info(
        "Callback %s on %s: %s",
        result.correlation_token,
        result.channel,
        result.status.value,
    )
    return acknowledgement()


@router.post("/merchant/callback", response_model=CallbackAcknowledgement)
async def merchant_callback(
    request: Request,
    merchant_payments: MerchantPayments,
) -> dict[str, Any]:
    """Merchant payment leg callback."""
    payload = await _json_body(request)
    result = await merchant_payments.reconcile_callback(payload)
    logger.info("Merchant callback %s: %s", result.correlation_token, result.status.value)
    return acknowledgement()
