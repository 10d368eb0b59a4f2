"""Payment provider abstraction.

The escrow ledger never talks to a processor directly. It talks to this
Protocol, so swapping the mock for a real processor requires no change
to escrow, fee, or deal logic. Every call reports success or failure
with a provider reference or failure code; a provider may also raise
PaymentProviderError, which the ledger treats exactly like a decline.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable
from uuid import uuid4


class PaymentProviderError(Exception):
    """Raised by a provider when it cannot produce a result at all."""


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a single provider call."""
    success: bool
    reference: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, reference: str) -> ChargeResult:
        return cls(success=True, reference=reference)

    @classmethod
    def declined(cls, code: str) -> ChargeResult:
        return cls(success=False, code=code)


@runtime_checkable
class PaymentProvider(Protocol):
    """Contract every payment processor integration must satisfy."""

    def charge(self, amount: Decimal, currency: str, method_ref: str) -> ChargeResult:
        """Collect ``amount`` from the payment method into escrow."""
        ...

    def refund(self, reference: str, amount: Decimal) -> ChargeResult:
        """Return ``amount`` of an earlier charge to its payer."""
        ...

    def payout(self, amount: Decimal, currency: str, recipient_id: str) -> ChargeResult:
        """Pay ``amount`` out of escrow to a recipient."""
        ...


class MockPaymentProvider:
    """Deterministic in-memory provider for tests and local runs.

    Usage:
        provider = MockPaymentProvider(declined_methods={"pm_card_declined"})
        provider.charge(Decimal("103.00"), "USD", "pm_card_visa")
        provider.fail_next("insufficient_funds")

    Declines any charge against a method in ``declined_methods``. A
    ``fail_next`` code makes the next call of any kind fail with it.
    Every call is recorded in ``calls`` as (operation, amount, target).
    """

    def __init__(self, declined_methods: Optional[set[str]] = None) -> None:
        self._declined_methods = set(declined_methods or ())
        self._fail_next: Optional[str] = None
        self._charges: dict[str, Decimal] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, Decimal, str]] = []

    def fail_next(self, code: str = "processing_error") -> None:
        with self._lock:
            self._fail_next = code

    def _consume_failure(self) -> Optional[str]:
        code, self._fail_next = self._fail_next, None
        return code

    def charge(self, amount: Decimal, currency: str, method_ref: str) -> ChargeResult:
        with self._lock:
            self.calls.append(("charge", amount, method_ref))
            code = self._consume_failure()
            if code:
                return ChargeResult.declined(code)
            if method_ref in self._declined_methods:
                return ChargeResult.declined("card_declined")
            reference = f"pi_{uuid4().hex[:16]}"
            self._charges[reference] = amount
            return ChargeResult.ok(reference)

    def refund(self, reference: str, amount: Decimal) -> ChargeResult:
        with self._lock:
            self.calls.append(("refund", amount, reference))
            code = self._consume_failure()
            if code:
                return ChargeResult.declined(code)
            charged = self._charges.get(reference)
            if charged is None:
                return ChargeResult.declined("unknown_charge")
            if amount > charged:
                return ChargeResult.declined("amount_exceeds_charge")
            self._charges[reference] = charged - amount
            return ChargeResult.ok(f"re_{uuid4().hex[:16]}")

    def payout(self, amount: Decimal, currency: str, recipient_id: str) -> ChargeResult:
        with self._lock:
            self.calls.append(("payout", amount, recipient_id))
            code = self._consume_failure()
            if code:
                return ChargeResult.declined(code)
            return ChargeResult.ok(f"po_{uuid4().hex[:16]}")
