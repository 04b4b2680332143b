"""Verification configuration objects.

Explicit configuration for the verification flow. Every object is immutable
and validated on construction.

Pattern:
    config = VerificationConfig(
        fee_bands=parse_fee_bands("1000:1,5000:5,*:50"),
        merchant_chaining=True,
        gateway_timeout_seconds=15,
    )

Rules:
    1. No env vars here. ``konfirmpay.config.Settings`` reads the
       environment and builds these objects.
    2. Fee bands are data, not control flow.
    3. Immutable after creation (frozen dataclasses).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation


@dataclass(frozen=True)
class FeeBand:
    """
    One band of the verification fee table.

    Attributes:
        upper_bound: Inclusive upper limit of the intended amount for this
            band. None marks the open-ended cap band.
        fee: Flat fee charged for amounts in this band.
    """

    upper_bound: Decimal | None
    fee: int

    def __post_init__(self) -> None:
        """Validate configuration."""
        if isinstance(self.fee, bool) or not isinstance(self.fee, int) or self.fee < 1:
            raise ValueError("fee must be a positive integer")
        if self.upper_bound is not None and self.upper_bound <= 0:
            raise ValueError("upper_bound must be positive")


DEFAULT_FEE_BANDS: tuple[FeeBand, ...] = (
    FeeBand(Decimal("1000"), 1),
    FeeBand(Decimal("5000"), 5),
    FeeBand(Decimal("10000"), 10),
    FeeBand(Decimal("20000"), 15),
    FeeBand(Decimal("30000"), 20),
    FeeBand(Decimal("50000"), 30),
    FeeBand(None, 50),
)


def parse_fee_bands(raw: str) -> tuple[FeeBand, ...]:
    """
    Parse a fee table from its compact string form.

    Format is comma separated ``upper:fee`` pairs with ``*`` as the upper
    bound of the cap band, e.g. ``"1000:1,5000:5,*:50"``.

    Raises:
        ValueError: If the string is not a valid band table.
    """
    bands: list[FeeBand] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            upper_raw, fee_raw = chunk.split(":")
            upper = None if upper_raw.strip() == "*" else Decimal(upper_raw.strip())
            fee = int(fee_raw.strip())
        except (ValueError, InvalidOperation) as exc:
            raise ValueError(f"Invalid fee band {chunk!r}") from exc
        bands.append(FeeBand(upper, fee))
    return tuple(bands)


@dataclass(frozen=True)
class DarajaConfig:
    """
    M-Pesa Daraja gateway configuration.

    Attributes:
        consumer_key: OAuth client id.
        consumer_secret: OAuth client secret.
        shortcode: Business short code that collects verification fees.
        passkey: Lipa Na M-Pesa Online passkey for the short code.
        callback_url: Public URL Daraja posts verification callbacks to.
        merchant_callback_url: Public URL for merchant-leg callbacks.
            Defaults to callback_url when empty.
        base_url: API host. Sandbox by default.
        timeout_seconds: Bound on every outbound call.
        token_refresh_margin_seconds: Refresh the access token this many
            seconds before it expires.
    """

    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    merchant_callback_url: str = ""
    base_url: str = "https://sandbox.safaricom.co.ke"
    timeout_seconds: float = 15.0
    token_refresh_margin_seconds: int = 60

    def __post_init__(self) -> None:
        """Validate configuration."""
        missing = [
            name
            for name in ("consumer_key", "consumer_secret", "shortcode", "passkey", "callback_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Missing Daraja settings: {', '.join(missing)}")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @property
    def sandbox(self) -> bool:
        """True when pointed at the Daraja sandbox."""
        return "sandbox" in self.base_url


@dataclass(frozen=True)
class CallbackSecurityConfig:
    """
    Authenticity checks for inbound gateway callbacks.

    Attributes:
        allowed_ips: Source addresses allowed to post callbacks. Empty
            allows any address.
        token: Shared secret expected in the ``token`` query parameter of
            the callback URL. Empty disables the check.
    """

    allowed_ips: tuple[str, ...] = ()
    token: str = ""

    @property
    def enabled(self) -> bool:
        """True if any check is configured."""
        return bool(self.allowed_ips or self.token)


@dataclass(frozen=True)
class VerificationConfig:
    """
    Complete verification configuration.

    Attributes:
        fee_bands: Verification fee table, lowest band first.
        merchant_chaining: If True, a settled verification triggers the
            merchant payment leg. Default False.
        gateway_timeout_seconds: Bound on the synchronous gateway call.
        pending_ttl_minutes: Age after which the housekeeping job fails
            sessions still PENDING.
        interim_result_codes: Gateway result codes meaning "still in
            progress".
        success_result_code: Gateway result code for a completed payment.
        default_country_code: Prefix for payer numbers given in local form.
        callback_security: Inbound callback checks.
    """

    fee_bands: tuple[FeeBand, ...] = DEFAULT_FEE_BANDS
    merchant_chaining: bool = False
    gateway_timeout_seconds: float = 15.0
    pending_ttl_minutes: int = 30
    interim_result_codes: frozenset[str] = frozenset({"4999", "500.001.1001"})
    success_result_code: str = "0"
    default_country_code: str = "254"
    callback_security: CallbackSecurityConfig = field(default_factory=CallbackSecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.fee_bands:
            raise ValueError("At least one fee band is required")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("gateway_timeout_seconds must be positive")
        if self.pending_ttl_minutes < 1:
            raise ValueError("pending_ttl_minutes must be at least 1")
        if not self.default_country_code.isdigit():
            raise ValueError("default_country_code must be digits")


def validate_production_config(
    config: VerificationConfig,
    daraja: DarajaConfig | None,
) -> list[str]:
    """
    Validate that a configuration is safe for production.

    Returns a list of warnings. Empty list = safe.
    """
    issues: list[str] = []

    if daraja is None:
        issues.append("CRITICAL: no Daraja configuration, stub gateway in use")
    elif daraja.sandbox:
        issues.append(f"WARNING: Daraja points at sandbox host {daraja.base_url}")

    if not config.callback_security.enabled:
        issues.append("WARNING: callback endpoint accepts posts from any source")

    return issues
