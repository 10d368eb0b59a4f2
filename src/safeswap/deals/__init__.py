"""Deal lifecycle: milestone ledger and deal state machine."""

from safeswap.deals.milestones import MilestoneLedger
from safeswap.deals.state_machine import DealStateMachine

__all__ = ["DealStateMachine", "MilestoneLedger"]
