"""Tests for escrow fee computation — proves rounding and quote totals."""

import pytest
from decimal import Decimal

from safeswap.escrow.fees import compute_fee, quote


RATE = Decimal("0.03")


class TestComputeFee:
    def test_three_percent(self) -> None:
        assert compute_fee(Decimal("1000"), RATE) == Decimal("30.00")

    def test_rounds_half_up_to_cent(self) -> None:
        # 0.50 * 0.03 = 0.015
        assert compute_fee(Decimal("0.50"), RATE) == Decimal("0.02")
        # 10.16 * 0.03 = 0.3048
        assert compute_fee(Decimal("10.16"), RATE) == Decimal("0.30")

    def test_zero_rate(self) -> None:
        assert compute_fee(Decimal("250"), Decimal("0")) == Decimal("0.00")

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ValueError):
            compute_fee(Decimal("-1"), RATE)

    def test_rate_of_one_rejected(self) -> None:
        with pytest.raises(ValueError):
            compute_fee(Decimal("100"), Decimal("1"))


class TestQuote:
    def test_quote_totals(self) -> None:
        q = quote(Decimal("1234.56"), RATE)
        assert q.amount == Decimal("1234.56")
        assert q.fee == Decimal("37.04")
        assert q.total == Decimal("1271.60")
        assert q.rate == RATE
