"""ORM models."""

from konfirmpay.models.base import Base, TimestampMixin, utcnow
from konfirmpay.models.merchant import Merchant
from konfirmpay.models.verification import (
    CallbackInbox,
    MerchantEntitlement,
    MerchantPayment,
    VerificationSession,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "Merchant",
    "VerificationSession",
    "MerchantPayment",
    "MerchantEntitlement",
    "CallbackInbox",
]
