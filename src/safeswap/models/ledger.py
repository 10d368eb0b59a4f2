"""Ledger models: fund movements and fee quotes.

All monetary values use Decimal for exact arithmetic. A Transaction is
written once, already in a terminal status, and never mutated.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class TransactionType(str, enum.Enum):
    ESCROW_DEPOSIT = "escrow_deposit"
    ESCROW_RELEASE = "escrow_release"
    ESCROW_REFUND = "escrow_refund"
    FEE_PAYMENT = "fee_payment"
    SAVINGS_DEPOSIT = "savings_deposit"
    SAVINGS_WITHDRAWAL = "savings_withdrawal"
    PEER_TRANSFER = "peer_transfer"


class TransactionStatus(str, enum.Enum):
    """Transaction status.

    The escrow ledger only ever writes COMPLETED or FAILED; the other
    values exist for records imported from the wider platform.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Transaction:
    """Immutable record of a single fund movement."""
    transaction_id: str
    deal_id: str
    user_id: str
    transaction_type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    created_utc: datetime
    fee: Decimal = Decimal("0")
    reference: Optional[str] = None
    failure_code: Optional[str] = None
    description: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


@dataclass(frozen=True)
class FeeQuote:
    """Fee breakdown shown to a buyer before funding.

    total = amount + fee; the buyer is charged ``total`` at funding.
    """
    amount: Decimal
    fee: Decimal
    total: Decimal
    rate: Decimal
