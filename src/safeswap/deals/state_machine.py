"""Deal state machine: transition table plus one guard per operation.

Deal lifecycle:
    CREATED → ACCEPTED → FUNDED → IN_PROGRESS → MILESTONE_COMPLETED → COMPLETED
    IN_PROGRESS → COMPLETED                    (single-milestone deals)
    CREATED / ACCEPTED → CANCELLED             (participants)
    any non-terminal → CANCELLED               (admins, refund first if funded)
    ACCEPTED / FUNDED / IN_PROGRESS / MILESTONE_COMPLETED → DISPUTED
    FUNDED / IN_PROGRESS / DISPUTED → REFUNDED
    DISPUTED → COMPLETED / REFUNDED            (admin resolution)

Terminal: COMPLETED, CANCELLED, REFUNDED.

Fail-closed: every transition not in the table is rejected with
InvalidState. Each guard checks status first, then the actor's role,
then any operation-specific precondition, and raises the matching
typed error. Guards never mutate; ``apply`` is the only writer of
``deal.status``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from safeswap.deals.milestones import MilestoneLedger
from safeswap.errors import (
    IncompleteMilestones,
    InvalidState,
    NotAdmin,
    NotBuyer,
    NotParticipant,
    NotSeller,
    RefundWindowClosed,
    ValidationFailed,
)
from safeswap.models.deal import (
    FUNDED_DEAL_STATUSES,
    TERMINAL_DEAL_STATUSES,
    Deal,
    DealStatus,
)
from safeswap.models.user import User
from safeswap.policy.resolver import PolicyResolver


# Valid transitions: {from_status: {allowed_to_statuses}}
_TRANSITIONS: dict[DealStatus, set[DealStatus]] = {
    DealStatus.CREATED: {DealStatus.ACCEPTED, DealStatus.CANCELLED},
    DealStatus.ACCEPTED: {
        DealStatus.FUNDED,
        DealStatus.CANCELLED,
        DealStatus.DISPUTED,
    },
    DealStatus.FUNDED: {
        DealStatus.IN_PROGRESS,
        DealStatus.CANCELLED,
        DealStatus.DISPUTED,
        DealStatus.REFUNDED,
    },
    DealStatus.IN_PROGRESS: {
        DealStatus.MILESTONE_COMPLETED,
        DealStatus.COMPLETED,
        DealStatus.CANCELLED,
        DealStatus.DISPUTED,
        DealStatus.REFUNDED,
    },
    DealStatus.MILESTONE_COMPLETED: {
        DealStatus.COMPLETED,
        DealStatus.CANCELLED,
        DealStatus.DISPUTED,
    },
    DealStatus.DISPUTED: {
        DealStatus.COMPLETED,
        DealStatus.CANCELLED,
        DealStatus.REFUNDED,
    },
    # Terminal statuses: no outgoing transitions
    DealStatus.COMPLETED: set(),
    DealStatus.CANCELLED: set(),
    DealStatus.REFUNDED: set(),
}

_PRE_FUNDING = frozenset({DealStatus.CREATED, DealStatus.ACCEPTED})
_APPROVABLE = frozenset({DealStatus.IN_PROGRESS, DealStatus.MILESTONE_COMPLETED})
_REFUNDABLE = frozenset({
    DealStatus.FUNDED,
    DealStatus.IN_PROGRESS,
    DealStatus.DISPUTED,
})
_DISPUTABLE = frozenset({
    DealStatus.ACCEPTED,
    DealStatus.FUNDED,
    DealStatus.IN_PROGRESS,
    DealStatus.MILESTONE_COMPLETED,
})


def _require_status(deal: Deal, allowed: frozenset, operation: str) -> None:
    if deal.status not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed))
        raise InvalidState(
            f"Cannot {operation} a deal that is {deal.status.value}. "
            f"Allowed from: [{allowed_str}]",
            {"deal_id": deal.deal_id, "status": deal.status.value},
        )


def _require_buyer(deal: Deal, user: User, message: str) -> None:
    if user.user_id != deal.buyer_id:
        raise NotBuyer(message, {"deal_id": deal.deal_id})


def _require_seller(deal: Deal, user: User, message: str) -> None:
    if user.user_id != deal.seller_id:
        raise NotSeller(message, {"deal_id": deal.deal_id})


def _require_participant(deal: Deal, user: User, message: str) -> None:
    if not deal.is_participant(user.user_id):
        raise NotParticipant(message, {"deal_id": deal.deal_id})


class DealStateMachine:
    """Validates actors and applies deal status transitions.

    Pure rule evaluation: no escrow calls, no trust updates, no events.
    The service layer sequences those around the guards.
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    # -- table -------------------------------------------------------------

    @staticmethod
    def can_transition(current: DealStatus, target: DealStatus) -> bool:
        return target in _TRANSITIONS.get(current, set())

    @staticmethod
    def valid_transitions(status: DealStatus) -> set[DealStatus]:
        return set(_TRANSITIONS.get(status, set()))

    @staticmethod
    def is_terminal(status: DealStatus) -> bool:
        return status in TERMINAL_DEAL_STATUSES

    def apply(
        self,
        deal: Deal,
        target: DealStatus,
        now: Optional[datetime] = None,
    ) -> Deal:
        """Validate against the table and move the deal to ``target``.

        Stamps updated_utc on every change and completed_utc on COMPLETED.
        """
        if not self.can_transition(deal.status, target):
            allowed = ", ".join(sorted(s.value for s in self.valid_transitions(deal.status)))
            raise InvalidState(
                f"Invalid deal transition: {deal.status.value} → {target.value}. "
                f"Allowed from {deal.status.value}: [{allowed}]",
                {"deal_id": deal.deal_id, "status": deal.status.value, "target": target.value},
            )
        if now is None:
            now = datetime.now(timezone.utc)
        deal.status = target
        deal.updated_utc = now
        if target == DealStatus.COMPLETED:
            deal.completed_utc = now
        return deal

    # -- guards ------------------------------------------------------------

    def guard_accept(self, deal: Deal, user: User) -> None:
        _require_status(deal, frozenset({DealStatus.CREATED}), "accept")
        _require_seller(deal, user, "Only the seller can accept this deal")

    def guard_fund(self, deal: Deal, user: User, payment_method_ref: str) -> None:
        _require_status(deal, frozenset({DealStatus.ACCEPTED}), "fund")
        _require_buyer(deal, user, "Only the buyer can fund this deal")
        if not (payment_method_ref or "").strip():
            raise ValidationFailed("Payment method is required")

    def guard_complete_milestone(self, deal: Deal, user: User) -> None:
        _require_status(deal, FUNDED_DEAL_STATUSES, "complete a milestone of")
        _require_seller(deal, user, "Only the seller can complete milestones")

    def guard_approve_milestone(self, deal: Deal, user: User) -> None:
        _require_status(deal, _APPROVABLE, "approve a milestone of")
        _require_buyer(deal, user, "Only the buyer can approve milestones")

    def guard_cancel(self, deal: Deal, user: User) -> None:
        """Participants cancel before funding; admins at any non-terminal status."""
        if deal.is_terminal:
            raise InvalidState(
                f"Cannot cancel a deal that is {deal.status.value}",
                {"deal_id": deal.deal_id, "status": deal.status.value},
            )
        if user.is_admin:
            return
        _require_participant(deal, user, "Only deal participants can cancel this deal")
        _require_status(deal, _PRE_FUNDING, "cancel")

    def guard_release(self, deal: Deal, user: User) -> None:
        _require_status(deal, FUNDED_DEAL_STATUSES, "release escrow for")
        _require_buyer(deal, user, "Only the buyer can release escrow")
        if not MilestoneLedger.all_approved(deal.milestones):
            pending = [m.order for m in MilestoneLedger.remaining(deal.milestones)]
            raise IncompleteMilestones(
                "All milestones must be approved before escrow is released",
                {"deal_id": deal.deal_id, "unapproved_orders": pending},
            )

    def guard_refund(self, deal: Deal, user: User) -> None:
        """Refund rules.

        Disputed deals are frozen for everyone but admins. Non-admins may
        only refund while delivered milestone value is below the
        configured share of the deal amount.
        """
        _require_status(deal, _REFUNDABLE, "refund")
        if not user.is_admin:
            _require_participant(deal, user, "Only deal participants can request a refund")
            if deal.status == DealStatus.DISPUTED:
                raise InvalidState(
                    "Deal is disputed; only an admin can refund it",
                    {"deal_id": deal.deal_id, "status": deal.status.value},
                )
            limit = self._resolver.deal_limits().refund_progress_limit
            progress = MilestoneLedger.progress_ratio(deal)
            if progress >= limit:
                raise RefundWindowClosed(
                    f"Refunds are only available while less than "
                    f"{limit * 100:.0f}% of the deal value is completed",
                    {"deal_id": deal.deal_id, "progress": progress, "limit": limit},
                )
        self._require_escrow(deal, "refund")

    def guard_dispute(self, deal: Deal, user: User) -> None:
        _require_status(deal, _DISPUTABLE, "dispute")
        _require_participant(deal, user, "Only deal participants can open a dispute")

    def guard_resolve_dispute(self, deal: Deal, user: User) -> None:
        _require_status(deal, frozenset({DealStatus.DISPUTED}), "resolve a dispute on")
        if not user.is_admin:
            raise NotAdmin("Only an admin can resolve disputes", {"deal_id": deal.deal_id})
        self._require_escrow(deal, "resolve")

    def guard_edit(self, deal: Deal, user: User) -> None:
        _require_status(deal, frozenset({DealStatus.CREATED}), "edit")
        _require_buyer(deal, user, "Only the buyer can edit this deal")

    @staticmethod
    def _require_escrow(deal: Deal, operation: str) -> None:
        if deal.escrow_amount <= 0:
            raise InvalidState(
                f"Cannot {operation}: no funds are held in escrow for this deal",
                {"deal_id": deal.deal_id},
            )
