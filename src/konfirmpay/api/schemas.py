"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Verification schemas
# ============================================================================


class StartVerificationRequest(BaseModel):
    """Schema for starting a verification.

    Fields are validated by the orchestrator so that missing or malformed
    values map to INVALID_REQUEST / INVALID_AMOUNT.
    """

    merchant_id: Any = Field(default=None, description="Merchant to verify against")
    payer_contact: Any = Field(default=None, description="Payer phone number")
    intended_amount: Any = Field(
        default=None, description="Amount the payer intends to pay the merchant"
    )


class StartVerificationResponse(BaseModel):
    """Schema for a started verification."""

    model_config = ConfigDict(from_attributes=True)

    session_id: UUID
    verification_fee: int
    message: str
    gateway_timed_out: bool = False


class MerchantProfileResponse(BaseModel):
    """Public merchant details."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    paybill: str


class DisclosureResponse(BaseModel):
    """Schema for a verified session's status."""

    merchant: MerchantProfileResponse
    amount: float


# ============================================================================
# Merchant payment schemas
# ============================================================================


class MerchantPaymentResponse(BaseModel):
    """Schema for a merchant payment attempt."""

    model_config = ConfigDict(from_attributes=True)

    merchant_payment_id: UUID
    session_id: UUID
    attempt: int
    state: str
    destination: str | None = None
    amount: float
    failure_reason: str | None = None
    created_at: datetime


# ============================================================================
# Callback schemas
# ============================================================================


class CallbackAcknowledgement(BaseModel):
    """Envelope returned to the gateway for every accepted callback."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str
