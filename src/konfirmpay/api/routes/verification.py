"""Verification endpoints.

Provides:
- POST /verify/start - price the fee and push the payment prompt
- GET /verify/{session_id}/status - merchant details once the fee is paid
- POST /verify/{session_id}/merchant-payment/retry - next merchant leg attempt
"""

from uuid import UUID

from fastapi import APIRouter, status

from konfirmpay.api.dependencies import Disclosure, MerchantPayments, Orchestrator
from konfirmpay.api.schemas import (
    DisclosureResponse,
    ErrorResponse,
    MerchantPaymentResponse,
    MerchantProfileResponse,
    StartVerificationRequest,
    StartVerificationResponse,
)
from konfirmpay.verification.errors import NotFound

router = APIRouter(prefix="/verify", tags=["verification"])


@router.post(
    "/start",
    response_model=StartVerificationResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def start_verification(
    body: StartVerificationRequest,
    orchestrator: Orchestrator,
) -> StartVerificationResponse:
    """Start a verification session and request the fee from the payer."""
    result = await orchestrator.start_verification(
        body.merchant_id,
        body.payer_contact,
        body.intended_amount,
    )
    return StartVerificationResponse.model_validate(result)


@router.get(
    "/{session_id}/status",
    response_model=DisclosureResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_status(session_id: str, gate: Disclosure) -> DisclosureResponse:
    """Reveal the merchant for a paid session."""
    result = await gate.get_status(session_id)
    return DisclosureResponse(
        merchant=MerchantProfileResponse.model_validate(result.merchant),
        amount=float(result.intended_amount),
    )


@router.post(
    "/{session_id}/merchant-payment/retry",
    response_model=MerchantPaymentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def retry_merchant_payment(
    session_id: str,
    merchant_payments: MerchantPayments,
) -> MerchantPaymentResponse:
    """Start a new merchant payment attempt after a failed one."""
    try:
        sid = UUID(session_id)
    except ValueError as exc:
        raise NotFound(f"Verification session {session_id} not found") from exc
    record = await merchant_payments.retry(sid)
    return MerchantPaymentResponse.model_validate(record)
