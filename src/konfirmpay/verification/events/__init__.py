"""Verification domain events package.

This package provides:
- Typed domain events for every verification state change
- Event emitter for publishing events to handlers
"""

from konfirmpay.verification.events.types import (
    # Base
    DomainEvent,
    EventMetadata,
    EventCategory,
    # Verification Events
    VerificationStarted,
    VerificationPaid,
    VerificationFailed,
    # Callback Events
    CallbackUnmatched,
    # Merchant Payment Events
    MerchantPaymentRequested,
    MerchantPaymentSettled,
    MerchantPaymentFailed,
    # Housekeeping Events
    SessionsExpired,
)
from konfirmpay.verification.events.emitter import (
    EventEmitter,
    EventHandler,
    EventRecorder,
    log_event,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    # Verification Events
    "VerificationStarted",
    "VerificationPaid",
    "VerificationFailed",
    # Callback Events
    "CallbackUnmatched",
    # Merchant Payment Events
    "MerchantPaymentRequested",
    "MerchantPaymentSettled",
    "MerchantPaymentFailed",
    # Housekeeping Events
    "SessionsExpired",
    # Emitter
    "EventEmitter",
    "EventHandler",
    "EventRecorder",
    "log_event",
]
