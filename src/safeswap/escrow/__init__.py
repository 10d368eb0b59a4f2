"""Escrow: fee policy, payment provider boundary and escrow ledger."""

from safeswap.escrow.fees import compute_fee, quote
from safeswap.escrow.ledger import EscrowLedger
from safeswap.escrow.provider import (
    ChargeResult,
    MockPaymentProvider,
    PaymentProvider,
    PaymentProviderError,
)

__all__ = [
    "ChargeResult",
    "EscrowLedger",
    "MockPaymentProvider",
    "PaymentProvider",
    "PaymentProviderError",
    "compute_fee",
    "quote",
]
