"""Tagged result returned by every SafeSwapService operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from safeswap.errors import FailureKind, SafeSwapError


@dataclass(frozen=True)
class Failure:
    """Why an operation failed."""
    kind: FailureKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: SafeSwapError) -> Failure:
        return cls(kind=error.kind, message=error.message, details=dict(error.details))


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation.

    Exactly one of ``value`` (on success) or ``failure`` is meaningful.
    ``data`` carries auxiliary output such as transactions or trust
    updates produced by the operation.
    """
    success: bool
    value: Any = None
    failure: Optional[Failure] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, value: Any = None, **data: Any) -> ServiceResult:
        return cls(success=True, value=value, data=data)

    @classmethod
    def fail(cls, error: SafeSwapError) -> ServiceResult:
        return cls(success=False, failure=Failure.from_error(error))

    @property
    def kind(self) -> Optional[FailureKind]:
        return self.failure.kind if self.failure else None

    @property
    def errors(self) -> list[str]:
        return [self.failure.message] if self.failure else []

    @property
    def is_retryable(self) -> bool:
        """Only payment failures are worth retrying as-is."""
        return self.kind == FailureKind.PAYMENT_DECLINED
