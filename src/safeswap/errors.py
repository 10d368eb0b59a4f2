"""Typed failure taxonomy for the SafeSwap core.

Engines raise these exceptions. The service facade catches every
SafeSwapError and converts it into a ServiceResult, so none of them
crosses the core boundary. Each error carries a FailureKind that the
API layer maps to a user-facing message and status code.
"""

from __future__ import annotations

import enum
from typing import Any, Optional


class FailureKind(str, enum.Enum):
    """Classification of a failed core operation."""
    INVALID_STATE = "invalid_state"
    NOT_BUYER = "not_buyer"
    NOT_SELLER = "not_seller"
    NOT_PARTICIPANT = "not_participant"
    NOT_ADMIN = "not_admin"
    MILESTONE_AMOUNT_MISMATCH = "milestone_amount_mismatch"
    INCOMPLETE_MILESTONES = "incomplete_milestones"
    REFUND_WINDOW_CLOSED = "refund_window_closed"
    INVALID_ADJUSTMENT = "invalid_adjustment"
    INVALID_REASON = "invalid_reason"
    NOT_FOUND = "not_found"
    PAYMENT_DECLINED = "payment_declined"
    VALIDATION = "validation"


class SafeSwapError(ValueError):
    """Base class for every business-rule violation in the core."""

    kind: FailureKind = FailureKind.VALIDATION

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class InvalidState(SafeSwapError):
    """Operation is not legal in the entity's current status."""
    kind = FailureKind.INVALID_STATE


class StaleVersion(InvalidState):
    """A concurrent writer committed first; the caller's copy is stale."""


class NotBuyer(SafeSwapError):
    kind = FailureKind.NOT_BUYER


class NotSeller(SafeSwapError):
    kind = FailureKind.NOT_SELLER


class NotParticipant(SafeSwapError):
    kind = FailureKind.NOT_PARTICIPANT


class NotAdmin(SafeSwapError):
    kind = FailureKind.NOT_ADMIN


class MilestoneAmountMismatch(SafeSwapError):
    """Milestone amounts do not add up to the deal amount.

    details: {"expected": Decimal, "actual": Decimal}
    """
    kind = FailureKind.MILESTONE_AMOUNT_MISMATCH


class IncompleteMilestones(SafeSwapError):
    kind = FailureKind.INCOMPLETE_MILESTONES


class RefundWindowClosed(SafeSwapError):
    kind = FailureKind.REFUND_WINDOW_CLOSED


class InvalidAdjustment(SafeSwapError):
    kind = FailureKind.INVALID_ADJUSTMENT


class InvalidReason(SafeSwapError):
    kind = FailureKind.INVALID_REASON


class NotFound(SafeSwapError):
    kind = FailureKind.NOT_FOUND


class PaymentDeclined(SafeSwapError):
    """The escrow collaborator declined, failed, or timed out.

    Distinct from validation failures so the caller can offer a retry.
    details: {"transaction_id": str, "code": str}
    """
    kind = FailureKind.PAYMENT_DECLINED


class ValidationFailed(SafeSwapError):
    """Input rejected before any state was touched."""
    kind = FailureKind.VALIDATION


class InvalidMilestone(ValidationFailed):
    """A milestone spec is missing its title or has a non-positive amount."""
