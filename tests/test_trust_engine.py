"""Tests for the trust engine — proves scoring, bounds and adjustment rules."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from safeswap.errors import FailureKind, InvalidAdjustment, InvalidReason
from safeswap.models.trust import (
    TrustHistory,
    TrustOutcome,
    TrustRank,
    TrustScoreUpdate,
    TrustTrend,
)
from safeswap.models.user import KYCStatus, User
from safeswap.policy.resolver import PolicyResolver
from safeswap.trust.engine import TrustEngine


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine() -> TrustEngine:
    return TrustEngine(PolicyResolver.from_config_dir(CONFIG_DIR))


def _user(score: int = 50, **kwargs) -> User:
    return User(user_id="u1", email="u1@example.com", trust_score=score, **kwargs)


def _update(delta: int, minutes: int) -> TrustScoreUpdate:
    return TrustScoreUpdate(
        update_id=f"trust_{minutes}",
        user_id="u1",
        previous_score=50,
        new_score=50 + delta,
        reason="test",
        created_utc=_now() + timedelta(minutes=minutes),
    )


class TestComposite:
    def test_new_user_gets_neutral_feedback_and_low_verification(self, engine: TrustEngine) -> None:
        breakdown = engine.compute_breakdown(_user(), TrustHistory())
        assert breakdown.completion == 0.0
        assert breakdown.volume == 0.0
        assert breakdown.feedback == 50.0
        assert breakdown.verification == 30.0
        assert breakdown.activity == 0.0
        # 0.20 * 50 + 0.15 * 30
        assert engine.compute_score(_user(), TrustHistory()) == 15

    def test_perfect_history_scores_100(self, engine: TrustEngine) -> None:
        user = _user(kyc_status=KYCStatus.APPROVED, is_verified=True, average_rating=5.0)
        history = TrustHistory(
            completed_deals=10, total_deals=10,
            total_volume=Decimal("100000"), days_active=365,
        )
        breakdown = engine.compute_breakdown(user, history)
        assert breakdown.completion == 100.0
        assert breakdown.volume == 100.0
        assert breakdown.activity == 100.0
        assert engine.compute_score(user, history) == 100

    def test_verified_without_kyc_scores_70(self, engine: TrustEngine) -> None:
        breakdown = engine.compute_breakdown(_user(is_verified=True), TrustHistory())
        assert breakdown.verification == 70.0

    def test_volume_is_logarithmic(self, engine: TrustEngine) -> None:
        history = TrustHistory(total_volume=Decimal("999"))
        assert engine.compute_breakdown(_user(), history).volume == pytest.approx(60.0)

    def test_score_is_within_bounds(self, engine: TrustEngine) -> None:
        for rating in (0.0, 2.5, 5.0):
            score = engine.compute_score(_user(average_rating=rating), TrustHistory(days_active=10))
            assert 0 <= score <= 100


class TestManualAdjustment:
    def test_adjustment_over_bound_rejected(self, engine: TrustEngine) -> None:
        with pytest.raises(InvalidAdjustment) as exc_info:
            engine.apply_adjustment(_user(), 60, "Verified off-platform references")
        assert exc_info.value.kind == FailureKind.INVALID_ADJUSTMENT

    def test_negative_adjustment_over_bound_rejected(self, engine: TrustEngine) -> None:
        with pytest.raises(InvalidAdjustment):
            engine.apply_adjustment(_user(), -51, "Repeated chargebacks reported")

    def test_short_reason_rejected(self, engine: TrustEngine) -> None:
        with pytest.raises(InvalidReason):
            engine.apply_adjustment(_user(), 40, "ok")

    def test_whitespace_padded_reason_is_stripped(self, engine: TrustEngine) -> None:
        with pytest.raises(InvalidReason):
            engine.apply_adjustment(_user(), 5, "   short    ")

    def test_non_integer_delta_rejected(self, engine: TrustEngine) -> None:
        with pytest.raises(InvalidAdjustment):
            engine.apply_adjustment(_user(), 2.5, "Verified off-platform references")  # type: ignore[arg-type]

    def test_valid_adjustment_builds_update(self, engine: TrustEngine) -> None:
        user = _user(60)
        new_score, update = engine.apply_adjustment(
            user, 40, "  Verified off-platform references  ",
            adjusted_by="admin_1", now=_now(),
        )
        assert new_score == 100
        assert update.previous_score == 60
        assert update.new_score == 100
        assert update.delta == 40
        assert update.reason == "Verified off-platform references"
        assert update.is_manual
        assert update.created_utc == _now()
        assert update.update_id.startswith("trust_")

    def test_adjustment_does_not_mutate_user(self, engine: TrustEngine) -> None:
        user = _user(60)
        engine.apply_adjustment(user, 10, "Verified off-platform references")
        assert user.trust_score == 60

    def test_score_clamped_at_upper_bound(self, engine: TrustEngine) -> None:
        new_score, update = engine.apply_adjustment(_user(90), 50, "Exceptional dispute conduct")
        assert new_score == 100
        assert update.delta == 10

    def test_score_clamped_at_lower_bound(self, engine: TrustEngine) -> None:
        new_score, _ = engine.apply_adjustment(_user(20), -50, "Confirmed fraudulent listing")
        assert new_score == 0


class TestAutomaticOutcomes:
    def test_milestone_approval(self, engine: TrustEngine) -> None:
        new_score, update = engine.apply_outcome(_user(), TrustOutcome.MILESTONE_APPROVED, deal_id="d1")
        assert new_score == 51
        assert update.reason == "Milestone approved by buyer"
        assert update.deal_id == "d1"
        assert not update.is_manual

    def test_deal_completed(self, engine: TrustEngine) -> None:
        new_score, update = engine.apply_outcome(_user(), TrustOutcome.DEAL_COMPLETED)
        assert new_score == 52
        assert update.reason == "Completed deal successfully"

    def test_cancellation_penalises_only_the_responsible_party(self, engine: TrustEngine) -> None:
        assert engine.outcome_delta(TrustOutcome.DEAL_CANCELLED, responsible=True) == -1
        assert engine.outcome_delta(TrustOutcome.DEAL_CANCELLED, responsible=False) == 0

    def test_dispute_lost(self, engine: TrustEngine) -> None:
        new_score, _ = engine.apply_outcome(_user(), TrustOutcome.DISPUTE_LOST)
        assert new_score == 45

    def test_outcomes_are_deterministic(self, engine: TrustEngine) -> None:
        first = engine.apply_outcome(_user(), TrustOutcome.KYC_APPROVED)
        second = engine.apply_outcome(_user(), TrustOutcome.KYC_APPROVED)
        assert first[0] == second[0] == 60
        assert first[1].reason == second[1].reason


class TestReadModels:
    @pytest.mark.parametrize("score,rank", [
        (100, TrustRank.EXCELLENT),
        (95, TrustRank.EXCELLENT),
        (94, TrustRank.VERY_GOOD),
        (85, TrustRank.VERY_GOOD),
        (75, TrustRank.GOOD),
        (60, TrustRank.FAIR),
        (40, TrustRank.POOR),
        (39, TrustRank.VERY_POOR),
        (0, TrustRank.VERY_POOR),
    ])
    def test_rank(self, score: int, rank: TrustRank) -> None:
        assert TrustEngine.rank(score) == rank

    def test_trend_increasing(self, engine: TrustEngine) -> None:
        assert engine.trend([_update(2, 1), _update(-1, 2), _update(1, 3)]) == TrustTrend.INCREASING

    def test_trend_decreasing(self, engine: TrustEngine) -> None:
        assert engine.trend([_update(-5, 1), _update(1, 2)]) == TrustTrend.DECREASING

    def test_trend_stable_without_updates(self, engine: TrustEngine) -> None:
        assert engine.trend([]) == TrustTrend.STABLE

    def test_trend_uses_most_recent_window(self, engine: TrustEngine) -> None:
        updates = [_update(-20, 0)] + [_update(1, m) for m in range(1, 6)]
        assert engine.trend(reversed(updates)) == TrustTrend.INCREASING

    def test_suggestions_for_new_user(self, engine: TrustEngine) -> None:
        breakdown = engine.compute_breakdown(_user(), TrustHistory())
        hints = engine.suggestions(breakdown)
        assert "Complete KYC verification to boost your trust score" in hints
        assert len(hints) == 5

    def test_no_suggestions_for_perfect_user(self, engine: TrustEngine) -> None:
        user = _user(kyc_status=KYCStatus.APPROVED, average_rating=5.0)
        history = TrustHistory(
            completed_deals=5, total_deals=5,
            total_volume=Decimal("100000"), days_active=100,
        )
        assert engine.suggestions(engine.compute_breakdown(user, history)) == []

    def test_summarize(self, engine: TrustEngine) -> None:
        summary = engine.summarize(_user(72), TrustHistory(), [_update(2, 1)])
        assert summary.current_score == 72
        assert summary.computed_score == 15
        assert summary.rank == TrustRank.FAIR
        assert summary.trend == TrustTrend.INCREASING
        assert len(summary.recent_updates) == 1
