"""Trust score computation and update log."""

from safeswap.trust.engine import TrustEngine
from safeswap.trust.log import TrustUpdateLog

__all__ = ["TrustEngine", "TrustUpdateLog"]
