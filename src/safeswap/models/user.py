"""User and actor models.

A User is created at registration and never deleted, only soft-disabled.
Its trust score is written only by the trust engine (via the service).
An Actor is the already-authenticated identity handed in by the API
layer; the core never trusts its role blindly and re-checks it against
the stored user.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class KYCStatus(str, enum.Enum):
    """Identity verification state, supplied by the KYC collaborator."""
    NOT_SUBMITTED = "not_submitted"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


_ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})


@dataclass
class User:
    """A registered marketplace participant."""
    user_id: str
    email: str
    role: UserRole = UserRole.USER
    is_verified: bool = False
    kyc_status: KYCStatus = KYCStatus.NOT_SUBMITTED
    trust_score: int = 50
    average_rating: Optional[float] = None
    disabled: bool = False
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role in _ADMIN_ROLES


@dataclass(frozen=True)
class Actor:
    """Resolved caller identity supplied by the API layer."""
    actor_id: str
    role: UserRole = UserRole.USER
