"""Policy resolver: the single source of truth for SafeSwap constants.

Every business constant (fee rate, deal limits, trust weights, automatic
trust deltas, escrow timeout) is read from safeswap_params.json through
this resolver. Call sites never hard-code them, so the quoting path and
the funding path can never disagree on the fee rate.

Fail-closed: a config that violates a structural rule (weights not
summing to 1.0, fee rate outside [0, 1), non-positive limits) is
rejected at load time with ValueError.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional, Union

from safeswap.models.trust import TrustOutcome

logger = logging.getLogger(__name__)

PARAMS_FILENAME = "safeswap_params.json"
DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"

_WEIGHT_KEYS = ("completion", "volume", "feedback", "verification", "activity")


@dataclass(frozen=True)
class DealLimits:
    """Validation bounds applied when a deal or milestone is created."""
    min_amount: Decimal
    max_amount: Decimal
    max_milestones: int
    min_milestone_amount: Decimal
    currencies: tuple[str, ...]
    milestone_tolerance: Decimal
    refund_progress_limit: Decimal
    title_length: tuple[int, int]
    description_length: tuple[int, int]
    milestone_title_length: tuple[int, int]
    max_page_size: int


def _decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Config value {key} is not a number: {value!r}") from exc


def _length_range(value: Any, key: str) -> tuple[int, int]:
    low, high = (int(v) for v in value)
    if low < 0 or high < low:
        raise ValueError(f"Config range {key} is invalid: {value!r}")
    return low, high


class PolicyResolver:
    """Typed accessors over the SafeSwap parameter document.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        rate = resolver.fee_rate()
        w_c, w_v, w_f, w_ver, w_a = resolver.trust_weights()
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params
        try:
            self._fee_rate = _decimal(
                params["fees"]["escrow_fee_rate"], "fees.escrow_fee_rate",
            )
            self._limits = self._build_limits(params["deals"])
            self._validate()
        except KeyError as exc:
            raise ValueError(f"Invalid SafeSwap config: missing key {exc}") from exc

    @classmethod
    def from_config_dir(cls, config_dir: Optional[Union[str, Path]] = None) -> PolicyResolver:
        """Load and validate ``safeswap_params.json`` from a directory."""
        directory = Path(config_dir) if config_dir is not None else DEFAULT_CONFIG_DIR
        path = directory / PARAMS_FILENAME
        if not path.exists():
            raise ValueError(f"Config file not found: {path}")
        params = json.loads(path.read_text(encoding="utf-8"))
        resolver = cls(params)
        logger.debug("Loaded policy version %s from %s", resolver.version, path)
        return resolver

    @staticmethod
    def _build_limits(deals: dict[str, Any]) -> DealLimits:
        return DealLimits(
            min_amount=_decimal(deals["min_amount"], "deals.min_amount"),
            max_amount=_decimal(deals["max_amount"], "deals.max_amount"),
            max_milestones=int(deals["max_milestones"]),
            min_milestone_amount=_decimal(
                deals["min_milestone_amount"], "deals.min_milestone_amount",
            ),
            currencies=tuple(str(c).upper() for c in deals["currencies"]),
            milestone_tolerance=_decimal(
                deals["milestone_tolerance"], "deals.milestone_tolerance",
            ),
            refund_progress_limit=_decimal(
                deals["refund_progress_limit"], "deals.refund_progress_limit",
            ),
            title_length=_length_range(deals["title_length"], "deals.title_length"),
            description_length=_length_range(
                deals["description_length"], "deals.description_length",
            ),
            milestone_title_length=_length_range(
                deals["milestone_title_length"], "deals.milestone_title_length",
            ),
            max_page_size=int(deals["max_page_size"]),
        )

    def _validate(self) -> None:
        errors: list[str] = []
        if not Decimal("0") <= self._fee_rate < Decimal("1"):
            errors.append(f"escrow_fee_rate must be in [0, 1), got {self._fee_rate}")

        limits = self._limits
        if limits.min_amount <= 0 or limits.max_amount < limits.min_amount:
            errors.append("deal amount limits must be positive and ordered")
        if limits.max_milestones < 1:
            errors.append("max_milestones must be at least 1")
        if limits.min_milestone_amount <= 0:
            errors.append("min_milestone_amount must be positive")
        if not limits.currencies:
            errors.append("at least one currency is required")
        if limits.milestone_tolerance < 0:
            errors.append("milestone_tolerance must be non-negative")
        if not Decimal("0") < limits.refund_progress_limit <= Decimal("1"):
            errors.append("refund_progress_limit must be in (0, 1]")
        if limits.max_page_size < 1:
            errors.append("max_page_size must be at least 1")

        weights = self.trust_weights()
        if any(w < 0 for w in weights):
            errors.append("trust weights must be non-negative")
        if not math.isclose(sum(weights), 1.0, abs_tol=1e-9):
            errors.append(f"trust weights must sum to 1.0, got {sum(weights)}")

        initial, low, high = self.trust_bounds()
        if not low <= initial <= high:
            errors.append(
                f"initial trust score {initial} outside [{low}, {high}]"
            )
        max_adj, min_reason = self.manual_adjustment_limits()
        if max_adj <= 0 or min_reason < 1:
            errors.append("manual adjustment limits must be positive")
        if self.escrow_timeout_seconds() <= 0:
            errors.append("escrow timeout must be positive")
        for outcome in TrustOutcome:
            if outcome.value not in self._params["trust"]["automatic_adjustments"]:
                errors.append(f"missing automatic adjustment for {outcome.value}")

        if errors:
            raise ValueError("Invalid SafeSwap config: " + "; ".join(errors))

    @property
    def version(self) -> str:
        return str(self._params.get("version", "unknown"))

    # -- fees --------------------------------------------------------------

    def fee_rate(self) -> Decimal:
        """The one escrow fee rate used for quoting and funding."""
        return self._fee_rate

    # -- deals -------------------------------------------------------------

    def deal_limits(self) -> DealLimits:
        return self._limits

    # -- trust -------------------------------------------------------------

    def trust_weights(self) -> tuple[float, float, float, float, float]:
        """Return (completion, volume, feedback, verification, activity)."""
        w = self._params["trust"]["weights"]
        return tuple(float(w[k]) for k in _WEIGHT_KEYS)  # type: ignore[return-value]

    def trust_bounds(self) -> tuple[int, int, int]:
        """Return (initial, min, max) trust score."""
        t = self._params["trust"]
        return int(t["initial_score"]), int(t["min_score"]), int(t["max_score"])

    def verification_scores(self) -> tuple[float, float, float]:
        """Return (kyc_approved, verified_only, unverified) component scores."""
        v = self._params["trust"]["verification_scores"]
        return float(v["kyc_approved"]), float(v["verified"]), float(v["unverified"])

    def neutral_feedback_score(self) -> float:
        return float(self._params["trust"]["neutral_feedback_score"])

    def manual_adjustment_limits(self) -> tuple[int, int]:
        """Return (max |delta|, min stripped reason length)."""
        t = self._params["trust"]
        return int(t["max_manual_adjustment"]), int(t["min_reason_length"])

    def automatic_adjustment(self, outcome: TrustOutcome) -> int:
        return int(self._params["trust"]["automatic_adjustments"][outcome.value])

    def trend_window(self) -> int:
        return int(self._params["trust"].get("trend_window", 5))

    # -- escrow ------------------------------------------------------------

    def escrow_timeout_seconds(self) -> float:
        return float(self._params["escrow"]["timeout_seconds"])
