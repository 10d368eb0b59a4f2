"""Escrow fee computation.

One configured rate feeds both the quote shown at deal creation and the
charge made at funding: fee = round_half_up(amount * rate, 0.01).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from safeswap.models.ledger import FeeQuote

_CENT = Decimal("0.01")


def compute_fee(amount: Decimal, rate: Decimal) -> Decimal:
    """Escrow fee for an amount, rounded half-up to the cent."""
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    if not Decimal("0") <= rate < Decimal("1"):
        raise ValueError(f"Fee rate must be in [0, 1), got {rate}")
    return (amount * rate).quantize(_CENT, rounding=ROUND_HALF_UP)


def quote(amount: Decimal, rate: Decimal) -> FeeQuote:
    fee = compute_fee(amount, rate)
    return FeeQuote(amount=amount, fee=fee, total=amount + fee, rate=rate)
