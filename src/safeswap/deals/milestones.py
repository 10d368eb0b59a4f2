"""Milestone ledger: ordered payment tranches of a deal.

Milestone lifecycle:
    PENDING → IN_PROGRESS → COMPLETED → APPROVED
    PENDING / IN_PROGRESS / COMPLETED → DISPUTED

Rules:
- Amounts sum to the deal amount within the configured tolerance.
- Milestones unlock strictly in ``order``; at most one is IN_PROGRESS.
- Only the seller completes, only the buyer approves.
- APPROVED never regresses. DISPUTED freezes automatic progression
  until an admin resolves the deal.

The ledger mutates the milestones of the deal it is handed. The service
hands it a working copy and commits only when the whole operation has
succeeded.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from safeswap.errors import (
    InvalidMilestone,
    InvalidReason,
    InvalidState,
    MilestoneAmountMismatch,
    NotBuyer,
    NotFound,
    NotParticipant,
    NotSeller,
)
from safeswap.models.deal import Deal, Milestone, MilestoneSpec, MilestoneStatus
from safeswap.policy.resolver import PolicyResolver


_MILESTONE_TRANSITIONS: dict[MilestoneStatus, frozenset] = {
    MilestoneStatus.PENDING: frozenset({
        MilestoneStatus.IN_PROGRESS,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.IN_PROGRESS: frozenset({
        MilestoneStatus.COMPLETED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.COMPLETED: frozenset({
        MilestoneStatus.APPROVED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.APPROVED: frozenset(),
    MilestoneStatus.DISPUTED: frozenset(),
}

_CENT = Decimal("0.01")


def milestone_id_for(deal_id: str, order: int) -> str:
    return f"milestone_{deal_id}_{order}"


def _transition(milestone: Milestone, target: MilestoneStatus) -> None:
    allowed = _MILESTONE_TRANSITIONS[milestone.status]
    if target not in allowed:
        raise InvalidState(
            f"Invalid milestone transition: {milestone.status.value} → {target.value}",
            {
                "milestone_id": milestone.milestone_id,
                "status": milestone.status.value,
                "target": target.value,
            },
        )
    milestone.status = target


class MilestoneLedger:
    """Creates and advances the milestones of a deal.

    Usage:
        ledger = MilestoneLedger(resolver)
        deal.milestones = ledger.create_milestones(
            deal.deal_id, Decimal("1000"),
            [MilestoneSpec("Design", Decimal("400")),
             MilestoneSpec("Build", Decimal("600"))],
        )
        ledger.start_next(deal.milestones)
        ledger.advance(deal, deal.milestones[0].milestone_id, deal.seller_id)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    # -- creation ----------------------------------------------------------

    def create_milestones(
        self,
        deal_id: str,
        deal_amount: Decimal,
        specs: Iterable[MilestoneSpec],
    ) -> list[Milestone]:
        """Validate specs and build PENDING milestones with 1-based order.

        Raises InvalidMilestone for a bad spec and MilestoneAmountMismatch
        (details: expected, actual) when the amounts do not add up.
        """
        specs = list(specs)
        limits = self._resolver.deal_limits()
        if not specs:
            raise InvalidMilestone("At least one milestone is required")
        if len(specs) > limits.max_milestones:
            raise InvalidMilestone(
                f"A deal can have at most {limits.max_milestones} milestones",
                {"count": len(specs), "max": limits.max_milestones},
            )

        min_title, max_title = limits.milestone_title_length
        milestones: list[Milestone] = []
        for order, spec in enumerate(specs, start=1):
            title = (spec.title or "").strip()
            if not title:
                raise InvalidMilestone(
                    f"Milestone {order} requires a title", {"order": order},
                )
            if not min_title <= len(title) <= max_title:
                raise InvalidMilestone(
                    f"Milestone {order} title must be {min_title}-{max_title} characters",
                    {"order": order},
                )
            amount = self._amount(spec.amount, order)
            if amount < limits.min_milestone_amount:
                raise InvalidMilestone(
                    f"Milestone {order} amount must be at least "
                    f"{limits.min_milestone_amount}",
                    {"order": order, "amount": amount},
                )
            milestones.append(Milestone(
                milestone_id=milestone_id_for(deal_id, order),
                deal_id=deal_id,
                title=title,
                amount=amount,
                order=order,
                description=(spec.description or "").strip(),
                due_utc=spec.due_utc,
            ))

        total = sum((m.amount for m in milestones), Decimal("0"))
        if abs(total - deal_amount) > limits.milestone_tolerance:
            raise MilestoneAmountMismatch(
                f"Milestone amounts must sum to the deal amount. "
                f"Expected: {deal_amount}, Got: {total}",
                {"expected": deal_amount, "actual": total},
            )
        return milestones

    @staticmethod
    def _amount(value: object, order: int) -> Decimal:
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation as exc:
            raise InvalidMilestone(
                f"Milestone {order} amount is not a number", {"order": order},
            ) from exc
        if not amount.is_finite() or amount <= 0:
            raise InvalidMilestone(
                f"Milestone {order} amount must be positive", {"order": order},
            )
        try:
            exact = amount == amount.quantize(_CENT)
        except InvalidOperation as exc:
            raise InvalidMilestone(
                f"Milestone {order} amount is out of range", {"order": order},
            ) from exc
        if not exact:
            raise InvalidMilestone(
                f"Milestone {order} amount can have at most 2 decimal places",
                {"order": order},
            )
        return amount

    def replace_milestones(self, deal: Deal, specs: Iterable[MilestoneSpec]) -> list[Milestone]:
        """Rebuild the milestone list of a deal that has not been accepted yet."""
        milestones = self.create_milestones(deal.deal_id, deal.amount, specs)
        deal.milestones = milestones
        return milestones

    # -- progression -------------------------------------------------------

    @staticmethod
    def start_next(milestones: list[Milestone]) -> Optional[Milestone]:
        """Move the lowest-order PENDING milestone to IN_PROGRESS.

        Does nothing while another milestone is IN_PROGRESS or awaiting
        approval, or while any milestone is DISPUTED.
        """
        statuses = {m.status for m in milestones}
        if statuses & {
            MilestoneStatus.IN_PROGRESS,
            MilestoneStatus.COMPLETED,
            MilestoneStatus.DISPUTED,
        }:
            return None
        pending = sorted(
            (m for m in milestones if m.status == MilestoneStatus.PENDING),
            key=lambda m: m.order,
        )
        if not pending:
            return None
        _transition(pending[0], MilestoneStatus.IN_PROGRESS)
        return pending[0]

    def advance(
        self,
        deal: Deal,
        milestone_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Milestone:
        """Seller marks the in-progress milestone as completed."""
        if actor_id != deal.seller_id:
            raise NotSeller("Only the seller can complete milestones")
        milestone = self._get(deal, milestone_id)
        if milestone.status != MilestoneStatus.IN_PROGRESS:
            raise InvalidState(
                f"Milestone {milestone.order} is {milestone.status.value}, "
                f"not in_progress",
                {"milestone_id": milestone_id, "status": milestone.status.value},
            )
        if now is None:
            now = datetime.now(timezone.utc)
        _transition(milestone, MilestoneStatus.COMPLETED)
        milestone.completed_utc = now
        return milestone

    def approve(
        self,
        deal: Deal,
        milestone_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[Milestone, Optional[Milestone]]:
        """Buyer approves a completed milestone and unlocks the next one.

        Returns (approved milestone, newly started milestone or None).
        """
        if actor_id != deal.buyer_id:
            raise NotBuyer("Only the buyer can approve milestones")
        milestone = self._get(deal, milestone_id)
        if milestone.status != MilestoneStatus.COMPLETED:
            raise InvalidState(
                f"Milestone {milestone.order} is {milestone.status.value}, "
                f"not completed",
                {"milestone_id": milestone_id, "status": milestone.status.value},
            )
        if now is None:
            now = datetime.now(timezone.utc)
        _transition(milestone, MilestoneStatus.APPROVED)
        milestone.approved_utc = now
        return milestone, self.start_next(deal.milestones)

    def dispute(
        self,
        deal: Deal,
        milestone_id: str,
        actor_id: str,
        reason: str,
    ) -> Milestone:
        """Either participant disputes a milestone that is not yet approved."""
        if not deal.is_participant(actor_id):
            raise NotParticipant("Only the buyer or seller can dispute a milestone")
        cleaned = (reason or "").strip()
        if not cleaned:
            raise InvalidReason("A dispute reason is required")
        milestone = self._get(deal, milestone_id)
        _transition(milestone, MilestoneStatus.DISPUTED)
        milestone.dispute_reason = cleaned
        return milestone

    # -- queries -----------------------------------------------------------

    @staticmethod
    def all_approved(milestones: list[Milestone]) -> bool:
        return bool(milestones) and all(
            m.status == MilestoneStatus.APPROVED for m in milestones
        )

    @staticmethod
    def completed_value(milestones: list[Milestone]) -> Decimal:
        """Value of milestones the seller has delivered (completed or approved)."""
        return sum(
            (
                m.amount for m in milestones
                if m.status in (MilestoneStatus.COMPLETED, MilestoneStatus.APPROVED)
            ),
            Decimal("0"),
        )

    @classmethod
    def progress_ratio(cls, deal: Deal) -> Decimal:
        if deal.amount <= 0:
            return Decimal("0")
        return cls.completed_value(deal.milestones) / deal.amount

    @staticmethod
    def remaining(milestones: list[Milestone]) -> list[Milestone]:
        """Milestones not yet approved, in unlock order."""
        return sorted(
            (m for m in milestones if m.status != MilestoneStatus.APPROVED),
            key=lambda m: m.order,
        )

    @staticmethod
    def _get(deal: Deal, milestone_id: str) -> Milestone:
        milestone = deal.milestone(milestone_id)
        if milestone is None:
            raise NotFound(
                f"Unknown milestone ID: {milestone_id}",
                {"deal_id": deal.deal_id, "milestone_id": milestone_id},
            )
        return milestone
