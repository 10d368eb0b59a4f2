"""Tests for the policy resolver — proves config loads and bad configs are rejected."""

import copy
import json
import pytest
from decimal import Decimal
from pathlib import Path

from safeswap.models.trust import TrustOutcome
from safeswap.policy.resolver import PARAMS_FILENAME, PolicyResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def params() -> dict:
    return json.loads((CONFIG_DIR / PARAMS_FILENAME).read_text(encoding="utf-8"))


class TestLoading:
    def test_loads_shipped_config(self, resolver: PolicyResolver) -> None:
        assert resolver.version == "1.0.0"

    def test_default_dir_is_repo_config(self) -> None:
        assert PolicyResolver.from_config_dir().fee_rate() == Decimal("0.03")

    def test_missing_file_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="not found"):
            PolicyResolver.from_config_dir(tmp_path)


class TestAccessors:
    def test_single_fee_rate(self, resolver: PolicyResolver) -> None:
        assert resolver.fee_rate() == Decimal("0.03")

    def test_deal_limits(self, resolver: PolicyResolver) -> None:
        limits = resolver.deal_limits()
        assert limits.min_amount == Decimal("10")
        assert limits.max_amount == Decimal("1000000")
        assert limits.max_milestones == 10
        assert limits.currencies == ("USD", "EUR", "GBP", "CAD")
        assert limits.milestone_tolerance == Decimal("0.01")
        assert limits.refund_progress_limit == Decimal("0.50")
        assert limits.title_length == (5, 100)
        assert limits.max_page_size == 50

    def test_trust_weights_sum_to_one(self, resolver: PolicyResolver) -> None:
        weights = resolver.trust_weights()
        assert weights == (0.30, 0.25, 0.20, 0.15, 0.10)
        assert sum(weights) == pytest.approx(1.0)

    def test_trust_bounds(self, resolver: PolicyResolver) -> None:
        assert resolver.trust_bounds() == (50, 0, 100)

    def test_manual_adjustment_limits(self, resolver: PolicyResolver) -> None:
        assert resolver.manual_adjustment_limits() == (50, 10)

    def test_automatic_adjustments(self, resolver: PolicyResolver) -> None:
        assert resolver.automatic_adjustment(TrustOutcome.MILESTONE_APPROVED) == 1
        assert resolver.automatic_adjustment(TrustOutcome.DEAL_COMPLETED) == 2
        assert resolver.automatic_adjustment(TrustOutcome.DEAL_CANCELLED) == -1
        assert resolver.automatic_adjustment(TrustOutcome.DISPUTE_LOST) == -5
        assert resolver.automatic_adjustment(TrustOutcome.KYC_APPROVED) == 10

    def test_escrow_timeout(self, resolver: PolicyResolver) -> None:
        assert resolver.escrow_timeout_seconds() == 10.0


class TestValidation:
    def test_weights_not_summing_to_one_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        bad["trust"]["weights"]["completion"] = 0.50
        with pytest.raises(ValueError, match="sum to 1.0"):
            PolicyResolver(bad)

    def test_fee_rate_of_one_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        bad["fees"]["escrow_fee_rate"] = "1"
        with pytest.raises(ValueError, match="escrow_fee_rate"):
            PolicyResolver(bad)

    def test_negative_fee_rate_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        bad["fees"]["escrow_fee_rate"] = "-0.01"
        with pytest.raises(ValueError):
            PolicyResolver(bad)

    def test_non_positive_min_amount_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        bad["deals"]["min_amount"] = "0"
        with pytest.raises(ValueError, match="amount limits"):
            PolicyResolver(bad)

    def test_initial_score_outside_bounds_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        bad["trust"]["initial_score"] = 150
        with pytest.raises(ValueError, match="initial trust score"):
            PolicyResolver(bad)

    def test_missing_outcome_adjustment_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        del bad["trust"]["automatic_adjustments"]["dispute_lost"]
        with pytest.raises(ValueError, match="dispute_lost"):
            PolicyResolver(bad)

    def test_missing_section_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        del bad["deals"]
        with pytest.raises(ValueError, match="missing key"):
            PolicyResolver(bad)

    def test_non_numeric_amount_rejected(self, params: dict) -> None:
        bad = copy.deepcopy(params)
        bad["deals"]["max_amount"] = "lots"
        with pytest.raises(ValueError, match="not a number"):
            PolicyResolver(bad)
