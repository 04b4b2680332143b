"""Payment verification package.

This package contains:
- Fee policy and configuration
- Gateway adapters (Daraja STK push, stub)
- Callback parsing
- Session store, orchestrator, merchant payment leg and disclosure gate
- Domain events and metrics
"""

from konfirmpay.verification.callbacks import (
    CallbackOutcome,
    CallbackResult,
    CallbackStatus,
    GatewayCallback,
    acknowledgement,
    parse_callback,
)
from konfirmpay.verification.config import (
    DEFAULT_FEE_BANDS,
    CallbackSecurityConfig,
    DarajaConfig,
    FeeBand,
    VerificationConfig,
    parse_fee_bands,
    validate_production_config,
)
from konfirmpay.verification.errors import (
    GatewayError,
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidAmount,
    InvalidRequest,
    MerchantPaymentNotRetryable,
    NotFound,
    PersistenceError,
    VerificationError,
    VerificationRequired,
)
from konfirmpay.verification.fees import FeePolicy
from konfirmpay.verification.state_machine import SessionState, SessionStateMachine

__all__ = [
    # Callbacks
    "CallbackOutcome",
    "CallbackResult",
    "CallbackStatus",
    "GatewayCallback",
    "acknowledgement",
    "parse_callback",
    # Config
    "DEFAULT_FEE_BANDS",
    "CallbackSecurityConfig",
    "DarajaConfig",
    "FeeBand",
    "VerificationConfig",
    "parse_fee_bands",
    "validate_production_config",
    # Errors
    "GatewayError",
    "GatewayRejected",
    "GatewayTimeout",
    "GatewayUnavailable",
    "InvalidAmount",
    "InvalidRequest",
    "MerchantPaymentNotRetryable",
    "NotFound",
    "PersistenceError",
    "VerificationError",
    "VerificationRequired",
    # Fees and states
    "FeePolicy",
    "SessionState",
    "SessionStateMachine",
]
