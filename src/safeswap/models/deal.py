"""Deal and milestone data models.

All monetary values use Decimal. A deal is created by its buyer, mutated
only through the deal state machine, and never physically deleted:
cancellation is a terminal status.

Deal lifecycle:
    CREATED → ACCEPTED → FUNDED → IN_PROGRESS → MILESTONE_COMPLETED → COMPLETED
    CREATED / ACCEPTED → CANCELLED
    ACCEPTED / FUNDED / IN_PROGRESS / MILESTONE_COMPLETED → DISPUTED
    DISPUTED → COMPLETED / REFUNDED (admin resolution)
    FUNDED / IN_PROGRESS / DISPUTED → REFUNDED

Milestone lifecycle:
    PENDING → IN_PROGRESS → COMPLETED → APPROVED
    any state except APPROVED → DISPUTED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class DealStatus(str, enum.Enum):
    CREATED = "created"
    ACCEPTED = "accepted"
    FUNDED = "funded"
    IN_PROGRESS = "in_progress"
    MILESTONE_COMPLETED = "milestone_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


TERMINAL_DEAL_STATUSES = frozenset({
    DealStatus.COMPLETED,
    DealStatus.CANCELLED,
    DealStatus.REFUNDED,
})

# Statuses in which the full deal amount is held in escrow.
FUNDED_DEAL_STATUSES = frozenset({
    DealStatus.FUNDED,
    DealStatus.IN_PROGRESS,
    DealStatus.MILESTONE_COMPLETED,
})


class DealCategory(str, enum.Enum):
    DIGITAL_SERVICES = "digital_services"
    FREELANCING = "freelancing"
    GOODS = "goods"
    CONSULTING = "consulting"
    SOFTWARE = "software"
    DESIGN = "design"
    MARKETING = "marketing"
    WRITING = "writing"
    OTHER = "other"


class MilestoneStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    DISPUTED = "disputed"


@dataclass(frozen=True)
class MilestoneSpec:
    """Caller-supplied description of a milestone before it exists."""
    title: str
    amount: Decimal
    description: str = ""
    due_utc: Optional[datetime] = None


@dataclass
class Milestone:
    """One payment tranche of a deal, unlocked in ``order``."""
    milestone_id: str
    deal_id: str
    title: str
    amount: Decimal
    order: int
    status: MilestoneStatus = MilestoneStatus.PENDING
    description: str = ""
    due_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    approved_utc: Optional[datetime] = None
    dispute_reason: Optional[str] = None


@dataclass
class Deal:
    """A transaction between exactly one buyer and one seller.

    Invariants enforced by the milestone ledger and state machine:
    - sum(m.amount for m in milestones) == amount (within tolerance).
    - escrow_amount is 0 while CREATED or ACCEPTED and equals amount
      while FUNDED, IN_PROGRESS or MILESTONE_COMPLETED.
    """
    deal_id: str
    title: str
    description: str
    category: DealCategory
    amount: Decimal
    currency: str
    buyer_id: str
    seller_id: str
    status: DealStatus = DealStatus.CREATED
    escrow_amount: Decimal = Decimal("0")
    escrow_fee: Decimal = Decimal("0")
    milestones: list[Milestone] = field(default_factory=list)
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    payment_reference: Optional[str] = None
    dispute_reason: Optional[str] = None
    disputed_by: Optional[str] = None
    disputed_utc: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEAL_STATUSES

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def counterparty_of(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def milestone(self, milestone_id: str) -> Optional[Milestone]:
        for m in self.milestones:
            if m.milestone_id == milestone_id:
                return m
        return None


class DisputeOutcome(str, enum.Enum):
    """Admin ruling on a disputed deal."""
    RELEASE = "release"
    REFUND = "refund"


class DealSortField(str, enum.Enum):
    CREATED = "created"
    AMOUNT = "amount"
    TITLE = "title"


@dataclass(frozen=True)
class DealFilters:
    """Search, filter, sort and pagination options for deal listings.

    ``limit`` is clamped to [1, max_page_size] and ``page`` to >= 1.
    """
    search: str = ""
    category: Optional[DealCategory] = None
    status: Optional[DealStatus] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    sort_by: DealSortField = DealSortField.CREATED
    descending: bool = True
    page: int = 1
    limit: int = 20


@dataclass(frozen=True)
class DealPage:
    items: list[Deal]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages
