"""Trust score data models.

Trust in SafeSwap is:
- An integer in [0, 100], starting at the configured initial score.
- Computed as a weighted composite of completion, volume, feedback,
  verification and activity components (safeswap_params.json).
- Changed only through TrustScoreUpdate records: automatic deltas from
  deal outcomes, or bounded manual adjustments by an admin.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class TrustOutcome(str, enum.Enum):
    """Deal outcomes that carry an automatic trust delta."""
    MILESTONE_APPROVED = "milestone_approved"
    DEAL_COMPLETED = "deal_completed"
    DEAL_CANCELLED = "deal_cancelled"
    DISPUTE_WON = "dispute_won"
    DISPUTE_LOST = "dispute_lost"
    KYC_APPROVED = "kyc_approved"


class TrustRank(str, enum.Enum):
    EXCELLENT = "Excellent"
    VERY_GOOD = "Very Good"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    VERY_POOR = "Very Poor"


class TrustTrend(str, enum.Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class TrustScoreUpdate:
    """A single, immutable trust-score change.

    adjusted_by is the admin id for manual adjustments and None for
    system-generated updates.
    """
    update_id: str
    user_id: str
    previous_score: int
    new_score: int
    reason: str
    created_utc: datetime
    deal_id: Optional[str] = None
    adjusted_by: Optional[str] = None

    @property
    def delta(self) -> int:
        return self.new_score - self.previous_score

    @property
    def is_manual(self) -> bool:
        return self.adjusted_by is not None


@dataclass
class TrustHistory:
    """Historical outcomes of one user, the input to score computation."""
    completed_deals: int = 0
    total_deals: int = 0
    total_volume: Decimal = Decimal("0")
    days_active: int = 0

    @property
    def success_rate(self) -> float:
        """Completed deals as a percentage of all closed deals."""
        if self.total_deals <= 0:
            return 0.0
        return self.completed_deals / self.total_deals * 100.0


@dataclass(frozen=True)
class TrustBreakdown:
    """Per-component scores (each 0-100) and their weighted composite."""
    completion: float
    volume: float
    feedback: float
    verification: float
    activity: float
    composite: float

    def as_dict(self) -> dict[str, float]:
        return {
            "completion": self.completion,
            "volume": self.volume,
            "feedback": self.feedback,
            "verification": self.verification,
            "activity": self.activity,
        }


@dataclass(frozen=True)
class TrustSummary:
    """Read model returned to profile and dashboard pages."""
    user_id: str
    current_score: int
    computed_score: int
    rank: TrustRank
    trend: TrustTrend
    breakdown: TrustBreakdown
    suggestions: list[str] = field(default_factory=list)
    recent_updates: list[TrustScoreUpdate] = field(default_factory=list)
