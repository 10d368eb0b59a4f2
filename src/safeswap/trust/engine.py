"""Trust score engine: computes scores and validates every score change.

Trust model:
  T = w_c * C + w_v * V + w_f * F + w_ver * VER + w_a * A

  C   completion  min(100, success rate %)
  V   volume      min(100, log10(total volume + 1) * 20)
  F   feedback    average rating (0-5) * 20, neutral score when unrated
  VER verification  KYC approved / verified only / unverified
  A   activity    min(100, days active * 2)

Invariants enforced:
- Weights sum to 1.0 (checked by the policy resolver).
- The stored score is an integer clamped to [min_score, max_score].
- Manual adjustments are bounded by max_manual_adjustment and need a
  reason of at least min_reason_length characters.
- Automatic deltas are a fixed function of the outcome: the same
  outcome always produces the same delta and reason.

The engine is pure computation. It never mutates a User; the service
layer writes the returned score and appends the returned update.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional
from uuid import uuid4

from safeswap.errors import InvalidAdjustment, InvalidReason
from safeswap.models.trust import (
    TrustBreakdown,
    TrustHistory,
    TrustOutcome,
    TrustRank,
    TrustScoreUpdate,
    TrustSummary,
    TrustTrend,
)
from safeswap.models.user import KYCStatus, User
from safeswap.policy.resolver import PolicyResolver


OUTCOME_REASONS: dict[TrustOutcome, str] = {
    TrustOutcome.MILESTONE_APPROVED: "Milestone approved by buyer",
    TrustOutcome.DEAL_COMPLETED: "Completed deal successfully",
    TrustOutcome.DEAL_CANCELLED: "Deal cancelled",
    TrustOutcome.DISPUTE_WON: "Dispute resolved in your favour",
    TrustOutcome.DISPUTE_LOST: "Dispute resolved against you",
    TrustOutcome.KYC_APPROVED: "Account verified with KYC",
}

# (lower bound, rank), checked top-down
_RANKS: tuple[tuple[int, TrustRank], ...] = (
    (95, TrustRank.EXCELLENT),
    (85, TrustRank.VERY_GOOD),
    (75, TrustRank.GOOD),
    (60, TrustRank.FAIR),
    (40, TrustRank.POOR),
)

# (component, threshold, hint)
_SUGGESTIONS: tuple[tuple[str, float, str], ...] = (
    ("completion", 80.0,
     "Complete more deals successfully to improve your completion rate"),
    ("verification", 70.0,
     "Complete KYC verification to boost your trust score"),
    ("volume", 50.0,
     "Participate in higher value deals to increase your volume score"),
    ("feedback", 80.0,
     "Focus on providing excellent service to get better feedback"),
    ("activity", 60.0,
     "Stay active on the platform to improve your activity score"),
)


def _new_update_id() -> str:
    return f"trust_{uuid4().hex[:12]}"


class TrustEngine:
    """Computes trust scores and builds validated TrustScoreUpdate records.

    Usage:
        engine = TrustEngine(resolver)
        score = engine.compute_score(user, history)
        new_score, update = engine.apply_adjustment(
            user, 10, "Verified off-platform references", adjusted_by="admin_1",
        )
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    # -- composite score ---------------------------------------------------

    def compute_breakdown(self, user: User, history: TrustHistory) -> TrustBreakdown:
        """Compute each component score (0-100) and the weighted composite."""
        w_c, w_v, w_f, w_ver, w_a = self._resolver.trust_weights()

        completion = min(100.0, history.success_rate)
        volume = min(100.0, math.log10(float(history.total_volume) + 1.0) * 20.0)
        if user.average_rating is None:
            feedback = self._resolver.neutral_feedback_score()
        else:
            feedback = max(0.0, min(100.0, user.average_rating * 20.0))
        verification = self._verification_component(user)
        activity = min(100.0, max(0, history.days_active) * 2.0)

        composite = (
            w_c * completion
            + w_v * volume
            + w_f * feedback
            + w_ver * verification
            + w_a * activity
        )
        return TrustBreakdown(
            completion=completion,
            volume=volume,
            feedback=feedback,
            verification=verification,
            activity=activity,
            composite=composite,
        )

    def compute_score(self, user: User, history: TrustHistory) -> int:
        """Weighted composite rounded half-up and clamped to the score range."""
        return self._clamp(self._round(self.compute_breakdown(user, history).composite))

    def _verification_component(self, user: User) -> float:
        kyc_score, verified_score, unverified_score = self._resolver.verification_scores()
        if user.kyc_status == KYCStatus.APPROVED:
            return kyc_score
        if user.is_verified:
            return verified_score
        return unverified_score

    # -- score changes -----------------------------------------------------

    def apply_adjustment(
        self,
        user: User,
        delta: int,
        reason: str,
        deal_id: Optional[str] = None,
        adjusted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[int, TrustScoreUpdate]:
        """Validate a manual adjustment and build its update record.

        Raises InvalidAdjustment if |delta| exceeds the configured bound
        and InvalidReason if the stripped reason is too short.

        Does NOT mutate the user. Returns (new score, update).
        """
        max_adj, min_reason = self._resolver.manual_adjustment_limits()
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidAdjustment(
                f"Adjustment must be a whole number, got {delta!r}",
                {"delta": delta},
            )
        if abs(delta) > max_adj:
            raise InvalidAdjustment(
                f"Adjustment must be between -{max_adj} and +{max_adj}",
                {"delta": delta, "max": max_adj},
            )
        cleaned = (reason or "").strip()
        if len(cleaned) < min_reason:
            raise InvalidReason(
                f"Reason must be at least {min_reason} characters",
                {"length": len(cleaned), "min": min_reason},
            )
        return self._build_update(user, delta, cleaned, deal_id, adjusted_by, now)

    def apply_outcome(
        self,
        user: User,
        outcome: TrustOutcome,
        deal_id: Optional[str] = None,
        responsible: bool = True,
        now: Optional[datetime] = None,
    ) -> tuple[int, TrustScoreUpdate]:
        """Build the automatic update for a deal outcome.

        ``responsible`` only matters for DEAL_CANCELLED: the party that
        cancelled takes the configured delta, the counterparty (and both
        parties of an admin cancellation) take zero.
        """
        delta = self.outcome_delta(outcome, responsible)
        return self._build_update(
            user, delta, OUTCOME_REASONS[outcome], deal_id, None, now,
        )

    def outcome_delta(self, outcome: TrustOutcome, responsible: bool = True) -> int:
        if outcome == TrustOutcome.DEAL_CANCELLED and not responsible:
            return 0
        return self._resolver.automatic_adjustment(outcome)

    def _build_update(
        self,
        user: User,
        delta: int,
        reason: str,
        deal_id: Optional[str],
        adjusted_by: Optional[str],
        now: Optional[datetime],
    ) -> tuple[int, TrustScoreUpdate]:
        if now is None:
            now = datetime.now(timezone.utc)
        previous = user.trust_score
        new_score = self._clamp(previous + delta)
        update = TrustScoreUpdate(
            update_id=_new_update_id(),
            user_id=user.user_id,
            previous_score=previous,
            new_score=new_score,
            reason=reason,
            created_utc=now,
            deal_id=deal_id,
            adjusted_by=adjusted_by,
        )
        return new_score, update

    # -- read models -------------------------------------------------------

    @staticmethod
    def rank(score: int) -> TrustRank:
        for lower, rank in _RANKS:
            if score >= lower:
                return rank
        return TrustRank.VERY_POOR

    def trend(self, updates: Iterable[TrustScoreUpdate]) -> TrustTrend:
        """Direction of the net delta over the most recent updates."""
        ordered = sorted(updates, key=lambda u: u.created_utc)
        window = ordered[-self._resolver.trend_window():]
        net = sum(u.delta for u in window)
        if net > 0:
            return TrustTrend.INCREASING
        if net < 0:
            return TrustTrend.DECREASING
        return TrustTrend.STABLE

    @staticmethod
    def suggestions(breakdown: TrustBreakdown) -> list[str]:
        components = breakdown.as_dict()
        return [
            hint for name, threshold, hint in _SUGGESTIONS
            if components[name] < threshold
        ]

    def summarize(
        self,
        user: User,
        history: TrustHistory,
        updates: list[TrustScoreUpdate],
    ) -> TrustSummary:
        breakdown = self.compute_breakdown(user, history)
        return TrustSummary(
            user_id=user.user_id,
            current_score=user.trust_score,
            computed_score=self._clamp(self._round(breakdown.composite)),
            rank=self.rank(user.trust_score),
            trend=self.trend(updates),
            breakdown=breakdown,
            suggestions=self.suggestions(breakdown),
            recent_updates=list(updates),
        )

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _round(value: float) -> int:
        return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def _clamp(self, score: int) -> int:
        _, low, high = self._resolver.trust_bounds()
        return max(low, min(high, score))
