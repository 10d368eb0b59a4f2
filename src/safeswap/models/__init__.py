"""Core data models for SafeSwap."""

from safeswap.models.user import Actor, KYCStatus, User, UserRole
from safeswap.models.deal import (
    Deal,
    DealCategory,
    DealFilters,
    DealPage,
    DealSortField,
    DealStatus,
    DisputeOutcome,
    Milestone,
    MilestoneSpec,
    MilestoneStatus,
)
from safeswap.models.ledger import (
    FeeQuote,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from safeswap.models.trust import (
    TrustBreakdown,
    TrustHistory,
    TrustOutcome,
    TrustRank,
    TrustScoreUpdate,
    TrustSummary,
    TrustTrend,
)

__all__ = [
    "Actor",
    "KYCStatus",
    "User",
    "UserRole",
    "Deal",
    "DealCategory",
    "DealFilters",
    "DealPage",
    "DealSortField",
    "DealStatus",
    "DisputeOutcome",
    "Milestone",
    "MilestoneSpec",
    "MilestoneStatus",
    "FeeQuote",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "TrustBreakdown",
    "TrustHistory",
    "TrustOutcome",
    "TrustRank",
    "TrustScoreUpdate",
    "TrustSummary",
    "TrustTrend",
]
