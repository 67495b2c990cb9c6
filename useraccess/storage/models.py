from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class AccountStatus(str, Enum):
    """Account lifecycle: INCOMPLETE -> ACTIVE; BLOCKED cannot sign in."""

    INCOMPLETE = "INCOMPLETE"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"


class Provider(str, Enum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


# Columns callers may change through update_account
UPDATABLE_FIELDS = frozenset(
    {
        "password_hash",
        "role",
        "status",
        "provider",
        "email_verified",
        "full_name",
        "birth_date",
    }
)


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    role: Role = Role.USER
    status: AccountStatus = AccountStatus.INCOMPLETE
    provider: Provider = Provider.LOCAL
    email_verified: bool = False
    full_name: Optional[str] = None
    birth_date: Optional[date] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def roles(self) -> list[str]:
        return [self.role.value]
