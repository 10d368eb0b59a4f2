"""Policy configuration loading for SafeSwap."""

from safeswap.policy.resolver import DealLimits, PolicyResolver

__all__ = ["DealLimits", "PolicyResolver"]
