"""Domain models shared by the account management service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """A user account as stored in the identity database.

    Instances are loaded per unit of work, mutated, and written back through
    :meth:`payserver.database.UserManager.update`.
    """

    id: str
    email: Optional[str] = None
    email_confirmed: bool = False
    requires_email_confirmation: bool = False
    approved: bool = False
    requires_approval: bool = False
    created: Optional[datetime] = None
    lockout_enabled: bool = False
    lockout_end: Optional[datetime] = None
    concurrency_stamp: Optional[str] = None

    def is_disabled(self, now: Optional[datetime] = None) -> bool:
        if not self.lockout_enabled or self.lockout_end is None:
            return False
        current = now or utcnow()
        return current < self.lockout_end


@dataclass(frozen=True)
class ApplicationUserData:
    """Read-only projection of a user and the names of its roles."""

    id: str
    email: Optional[str]
    email_confirmed: bool
    requires_email_confirmation: bool
    approved: bool
    requires_approval: bool
    created: Optional[datetime]
    roles: Tuple[str, ...]
    disabled: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "email": self.email,
            "email_confirmed": self.email_confirmed,
            "requires_email_confirmation": self.requires_email_confirmation,
            "approved": self.approved,
            "requires_approval": self.requires_approval,
            "created": self.created.isoformat() if self.created else None,
            "roles": sorted(self.roles),
            "disabled": self.disabled,
        }


@dataclass(frozen=True)
class StoredFile:
    """Metadata for a file uploaded by a user."""

    id: str
    user_id: str
    file_name: str
    storage_file_name: str
    created: datetime


@dataclass(frozen=True)
class IdentityResult:
    """Outcome of a write against the identity store."""

    succeeded: bool
    errors: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls) -> "IdentityResult":
        return cls(succeeded=True)

    @classmethod
    def failed(cls, *errors: str) -> "IdentityResult":
        return cls(succeeded=False, errors=tuple(errors))

    def __bool__(self) -> bool:
        return self.succeeded


def normalise_roles(roles: Sequence[Optional[str]]) -> Tuple[str, ...]:
    return tuple(role for role in roles if role)


__all__ = [
    "ApplicationUserData",
    "IdentityResult",
    "StoredFile",
    "User",
    "normalise_roles",
    "utcnow",
]
