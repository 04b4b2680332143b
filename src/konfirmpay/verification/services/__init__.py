"""Verification services."""

from konfirmpay.verification.services.disclosure import (
    AsyncDisclosureGate,
    DisclosureGate,
    DisclosureResult,
)
from konfirmpay.verification.services.housekeeping import ExpiryResult, expire_stale_sessions
from konfirmpay.verification.services.merchant_directory import (
    AsyncMerchantDirectory,
    MerchantDirectory,
    MerchantProfile,
)
from konfirmpay.verification.services.merchant_payments import (
    AsyncMerchantPaymentService,
    MerchantPaymentService,
    NO_COLLECTION_ACCOUNT,
    whole_units,
)
from konfirmpay.verification.services.orchestrator import (
    AsyncVerificationOrchestrator,
    StartResult,
    VerificationOrchestrator,
    normalize_payer_contact,
)
from konfirmpay.verification.services.session_store import (
    AsyncSessionStore,
    DuplicateReceipt,
    MerchantPaymentRecord,
    SessionRecord,
    SessionStore,
)

__all__ = [
    "AsyncDisclosureGate",
    "AsyncMerchantDirectory",
    "AsyncMerchantPaymentService",
    "AsyncSessionStore",
    "AsyncVerificationOrchestrator",
    "DisclosureGate",
    "DisclosureResult",
    "DuplicateReceipt",
    "ExpiryResult",
    "MerchantDirectory",
    "MerchantPaymentRecord",
    "MerchantPaymentService",
    "MerchantProfile",
    "NO_COLLECTION_ACCOUNT",
    "SessionRecord",
    "SessionStore",
    "StartResult",
    "VerificationOrchestrator",
    "expire_stale_sessions",
    "normalize_payer_contact",
    "whole_units",
]
