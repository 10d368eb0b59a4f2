"""Escrow ledger: holds buyer funds per deal and records every movement.

At funding the buyer is charged amount + fee in a single provider call.
While funds are held:
    release → amount paid out to the seller; the held fee moves to the
              platform as a FEE_PAYMENT once the escrow is emptied
    refund  → amount returned to the buyer together with the held fee

Every call appends exactly one immutable Transaction whose status is
COMPLETED or FAILED, never pending. A provider timeout, any exception
raised by the provider and a declined result are all the same FAILED
outcome. The ledger never retries; the caller decides what to do.

Misuse (depositing twice, releasing or refunding more than is held)
raises InvalidState before the provider is called.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from safeswap.errors import InvalidState, ValidationFailed
from safeswap.escrow.provider import ChargeResult, PaymentProvider, PaymentProviderError
from safeswap.models.ledger import Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

PLATFORM_ACCOUNT = "platform"
TIMEOUT_CODE = "provider_timeout"
PROVIDER_ERROR_CODE = "provider_error"


class EscrowLedger:
    """Per-deal escrow balances over a PaymentProvider.

    Usage:
        ledger = EscrowLedger(MockPaymentProvider(), timeout_seconds=10)
        tx = ledger.deposit("deal_1", "buyer_1", Decimal("1000"),
                            Decimal("30"), "pm_card_visa")
        if tx.succeeded:
            ledger.release("deal_1", Decimal("1000"), "seller_1")
    """

    def __init__(
        self,
        provider: PaymentProvider,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not isinstance(provider, PaymentProvider):
            raise TypeError(
                f"Provider must implement PaymentProvider Protocol, got {type(provider)}",
            )
        self._provider = provider
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="escrow")
        self._lock = threading.Lock()
        self._balances: dict[str, Decimal] = {}
        self._fees: dict[str, Decimal] = {}
        self._references: dict[str, str] = {}
        self._currencies: dict[str, str] = {}
        self._transactions: list[Transaction] = []

    # -- movements ---------------------------------------------------------

    def deposit(
        self,
        deal_id: str,
        user_id: str,
        amount: Decimal,
        fee: Decimal,
        payment_method_ref: str,
        currency: str = "USD",
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Charge amount + fee and hold ``amount`` (and the fee) for the deal."""
        if amount <= 0 or fee < 0:
            raise ValidationFailed(
                "Deposit amount must be positive and fee non-negative",
                {"amount": amount, "fee": fee},
            )
        if self.balance(deal_id) > 0:
            raise InvalidState(
                f"Escrow for deal {deal_id} already holds funds",
                {"deal_id": deal_id, "balance": self.balance(deal_id)},
            )

        result = self._call(
            "charge", self._provider.charge, amount + fee, currency, payment_method_ref,
        )
        tx = self._record(
            deal_id=deal_id,
            user_id=user_id,
            tx_type=TransactionType.ESCROW_DEPOSIT,
            amount=amount,
            fee=fee,
            currency=currency,
            result=result,
            description=f"Escrow deposit for deal {deal_id}",
            now=now,
        )
        if tx.succeeded:
            with self._lock:
                self._balances[deal_id] = amount
                self._fees[deal_id] = fee
                self._references[deal_id] = result.reference or ""
                self._currencies[deal_id] = currency
            logger.info(
                "Escrow deposit %s for deal %s: %s + fee %s %s",
                tx.transaction_id, deal_id, amount, fee, currency,
            )
        return tx

    def release(
        self,
        deal_id: str,
        amount: Decimal,
        to_seller: str,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Pay ``amount`` out of escrow to the seller."""
        self._check_withdrawal(deal_id, amount, "release")
        currency = self._currencies[deal_id]
        result = self._call("payout", self._provider.payout, amount, currency, to_seller)
        tx = self._record(
            deal_id=deal_id,
            user_id=to_seller,
            tx_type=TransactionType.ESCROW_RELEASE,
            amount=amount,
            fee=Decimal("0"),
            currency=currency,
            result=result,
            description=f"Escrow release to seller for deal {deal_id}",
            now=now,
        )
        if not tx.succeeded:
            return tx

        with self._lock:
            remaining = self._balances[deal_id] - amount
            self._balances[deal_id] = remaining
            fee = self._fees.get(deal_id, Decimal("0")) if remaining == 0 else Decimal("0")
            if fee > 0:
                self._fees[deal_id] = Decimal("0")
        logger.info("Escrow release %s for deal %s: %s %s", tx.transaction_id, deal_id, amount, currency)
        if fee > 0:
            self._append(Transaction(
                transaction_id=_new_transaction_id(),
                deal_id=deal_id,
                user_id=PLATFORM_ACCOUNT,
                transaction_type=TransactionType.FEE_PAYMENT,
                amount=fee,
                currency=currency,
                status=TransactionStatus.COMPLETED,
                created_utc=tx.created_utc,
                reference=tx.reference,
                description=f"Escrow fee earned on deal {deal_id}",
            ))
        return tx

    def refund(
        self,
        deal_id: str,
        amount: Decimal,
        to_buyer: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Return ``amount`` to the buyer; a refund that empties the escrow
        also returns the held fee."""
        self._check_withdrawal(deal_id, amount, "refund")
        currency = self._currencies[deal_id]
        with self._lock:
            empties = self._balances[deal_id] == amount
            fee = self._fees.get(deal_id, Decimal("0")) if empties else Decimal("0")
            reference = self._references[deal_id]

        result = self._call("refund", self._provider.refund, reference, amount + fee)
        tx = self._record(
            deal_id=deal_id,
            user_id=to_buyer,
            tx_type=TransactionType.ESCROW_REFUND,
            amount=amount,
            fee=fee,
            currency=currency,
            result=result,
            description=reason or f"Escrow refund to buyer for deal {deal_id}",
            now=now,
        )
        if tx.succeeded:
            with self._lock:
                self._balances[deal_id] -= amount
                if fee > 0:
                    self._fees[deal_id] = Decimal("0")
            logger.info(
                "Escrow refund %s for deal %s: %s + fee %s %s",
                tx.transaction_id, deal_id, amount, fee, currency,
            )
        return tx

    # -- queries -----------------------------------------------------------

    def balance(self, deal_id: str) -> Decimal:
        with self._lock:
            return self._balances.get(deal_id, Decimal("0"))

    def held_fee(self, deal_id: str) -> Decimal:
        with self._lock:
            return self._fees.get(deal_id, Decimal("0"))

    def transactions(self, deal_id: Optional[str] = None) -> list[Transaction]:
        """Return transactions, optionally filtered by deal, oldest first."""
        with self._lock:
            if deal_id is None:
                return list(self._transactions)
            return [t for t in self._transactions if t.deal_id == deal_id]

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # -- internals ---------------------------------------------------------

    def _check_withdrawal(self, deal_id: str, amount: Decimal, operation: str) -> None:
        held = self.balance(deal_id)
        if amount <= 0 or amount > held:
            raise InvalidState(
                f"Cannot {operation} {amount} from escrow for deal {deal_id}: "
                f"{held} held",
                {"deal_id": deal_id, "amount": amount, "held": held},
            )

    def _call(self, operation: str, fn: Callable[..., ChargeResult], *args: object) -> ChargeResult:
        """Run one provider call with the configured timeout.

        Timeouts and any exception raised by the provider become a
        declined result.
        """
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("Payment provider %s timed out after %ss", operation, self._timeout)
            return ChargeResult.declined(TIMEOUT_CODE)
        except PaymentProviderError as exc:
            logger.warning("Payment provider %s failed: %s", operation, exc)
            return ChargeResult.declined(PROVIDER_ERROR_CODE)
        except Exception:
            logger.exception("Payment provider %s raised unexpectedly", operation)
            return ChargeResult.declined(PROVIDER_ERROR_CODE)

    def _record(
        self,
        deal_id: str,
        user_id: str,
        tx_type: TransactionType,
        amount: Decimal,
        fee: Decimal,
        currency: str,
        result: ChargeResult,
        description: str,
        now: Optional[datetime],
    ) -> Transaction:
        if now is None:
            now = datetime.now(timezone.utc)
        status = TransactionStatus.COMPLETED if result.success else TransactionStatus.FAILED
        tx = Transaction(
            transaction_id=_new_transaction_id(),
            deal_id=deal_id,
            user_id=user_id,
            transaction_type=tx_type,
            amount=amount,
            fee=fee,
            currency=currency,
            status=status,
            created_utc=now,
            reference=result.reference,
            failure_code=None if result.success else (result.code or "declined"),
            description=description,
        )
        self._append(tx)
        if not result.success:
            logger.warning(
                "%s for deal %s failed with %s", tx_type.value, deal_id, tx.failure_code,
            )
        return tx

    def _append(self, tx: Transaction) -> None:
        with self._lock:
            self._transactions.append(tx)


def _new_transaction_id() -> str:
    return f"txn_{uuid4().hex[:12]}"
