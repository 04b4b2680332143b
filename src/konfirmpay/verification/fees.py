"""Verification fee policy.

Maps the amount a payer intends to pay a merchant to the flat verification
fee collected first. The table is configuration (see ``FeeBand``).
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation

from konfirmpay.verification.config import DEFAULT_FEE_BANDS, FeeBand
from konfirmpay.verification.errors import InvalidAmount


# Amount columns are Numeric(14, 2).
AMOUNT_PLACES = 2
MAX_AMOUNT = Decimal("999999999999.99")


def to_amount(value: object) -> Decimal:
    """Coerce a positive numeric amount to Decimal.

    Raises:
        InvalidAmount: For bool, str, non-finite or non-positive values, more
            than two decimal places, or more than ``MAX_AMOUNT``.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidAmount(f"Amount must be a number, got {type(value).__name__}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidAmount(f"Amount {value!r} is not a number") from exc
    if not amount.is_finite():
        raise InvalidAmount("Amount must be finite")
    if amount <= 0:
        raise InvalidAmount("Amount must be positive")
    if amount > MAX_AMOUNT:
        raise InvalidAmount(f"Amount must not exceed {MAX_AMOUNT}")
    if amount.normalize().as_tuple().exponent < -AMOUNT_PLACES:
        raise InvalidAmount(f"Amount has more than {AMOUNT_PLACES} decimal places")
    return amount


class FeePolicy:
    """Banded verification fee lookup.

    Bands are ordered by upper bound; the first band whose bound is at or
    above the amount applies. The final band has no bound and caps the fee.
    """

    def __init__(self, bands: Iterable[FeeBand] = DEFAULT_FEE_BANDS):
        self.bands = tuple(bands)
        self._validate()

    def _validate(self) -> None:
        if not self.bands:
            raise ValueError("Fee policy needs at least one band")
        if self.bands[-1].upper_bound is not None:
            raise ValueError("Last fee band must be open-ended")

        previous_bound: Decimal | None = None
        previous_fee = 0
        for band in self.bands[:-1]:
            if band.upper_bound is None:
                raise ValueError("Only the last fee band may be open-ended")
            if previous_bound is not None and band.upper_bound <= previous_bound:
                raise ValueError("Fee band bounds must be strictly increasing")
            if band.fee < previous_fee:
                raise ValueError("Fee bands must not decrease")
            previous_bound = band.upper_bound
            previous_fee = band.fee
        if self.bands[-1].fee < previous_fee:
            raise ValueError("Fee bands must not decrease")

    def fee(self, intended_amount: object) -> int:
        """Return the verification fee for an intended payment amount."""
        amount = to_amount(intended_amount)
        for band in self.bands:
            if band.upper_bound is None or amount <= band.upper_bound:
                return band.fee
        # Unreachable: the last band is open-ended.
        return self.bands[-1].fee

    @property
    def maximum_fee(self) -> int:
        """Fee charged by the cap band."""
        return self.bands[-1].fee
