"""Error taxonomy for the verification flow.

Every error carries a stable ``code`` and the HTTP status the API maps it to.
Errors on the synchronous start path propagate to the caller; callback
processing never raises them past the orchestrator.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for all verification errors."""

    code = "VERIFICATION_ERROR"
    http_status = 500

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class InvalidRequest(VerificationError):
    """Request is missing fields or is malformed."""

    code = "INVALID_REQUEST"
    http_status = 400


class InvalidAmount(InvalidRequest):
    """Amount must be a positive number."""

    code = "INVALID_AMOUNT"


class PersistenceError(VerificationError):
    """Session store is unavailable."""

    code = "PERSISTENCE_ERROR"
    http_status = 503


class GatewayError(VerificationError):
    """Payment gateway call failed."""

    code = "GATEWAY_ERROR"
    http_status = 502


class GatewayUnavailable(GatewayError):
    """Payment gateway could not be reached."""

    code = "GATEWAY_UNAVAILABLE"


class GatewayTimeout(GatewayUnavailable):
    """Payment gateway did not answer in time."""

    code = "GATEWAY_TIMEOUT"
    http_status = 504


class GatewayRejected(GatewayError):
    """Payment gateway refused the payment request."""

    code = "GATEWAY_REJECTED"

    def __init__(self, message: str | None = None, response_code: str | None = None):
        self.response_code = response_code
        super().__init__(message)


class VerificationRequired(VerificationError):
    """Verification fee has not been paid for this session."""

    code = "VERIFICATION_REQUIRED"
    http_status = 403


class NotFound(VerificationError):
    """Verification session not found."""

    code = "NOT_FOUND"
    http_status = 404


class UnmatchedCallback(VerificationError):
    """Callback does not reference any known payment request."""

    code = "UNMATCHED_CALLBACK"
    http_status = 200


class CallbackParseError(VerificationError):
    """Callback payload is not a recognised gateway envelope."""

    code = "INVALID_CALLBACK"
    http_status = 400


class MerchantPaymentNotRetryable(VerificationError):
    """Merchant payment cannot be retried in its current state."""

    code = "MERCHANT_PAYMENT_NOT_RETRYABLE"
    http_status = 409
