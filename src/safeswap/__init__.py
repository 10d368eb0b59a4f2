"""SafeSwap core: deal, milestone, escrow and trust-score engine."""

__version__ = "0.1.0"
