from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from useraccess.storage.errors import ConstraintViolation
from useraccess.storage.models import (
    UPDATABLE_FIELDS,
    Account,
    AccountStatus,
    Provider,
    Role,
)


class MemoryStore:
    """In-process account store for tests and local development."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        # Reentrant so ensure_account can call create_account under the lock
        self._data_lock = threading.RLock()

    def create_account(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.INCOMPLETE,
        provider: Provider = Provider.LOCAL,
        email_verified: bool = False,
    ) -> Account:
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                role=role,
                status=status,
                provider=provider,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            self._email_index[email] = account.id
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email)
            if account_id is None:
                return None
            return replace(self.accounts[account_id])

    def update_account(
        self,
        account_id: str,
        *,
        expected_status: Optional[AccountStatus] = None,
        **fields,
    ) -> Optional[Account]:
        """Apply ``fields``; None when missing or not in ``expected_status``."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if expected_status is not None and account.status != expected_status:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = datetime.now(timezone.utc)
            return replace(account)

    def ensure_account(self, email: str, **defaults) -> Tuple[Account, bool]:
        """Find an account by email or create it; returns (account, created)."""
        with self._data_lock:
            existing = self.get_account_by_email(email)
            if existing:
                return existing, False
            return self.create_account(email, **defaults), True

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryCache:
    """In-process TTL key store used when Redis is unavailable.

    Mirrors the RedisCache key-store surface, including the atomic
    set-if-absent and increment-with-ceiling primitives. Expired entries are
    dropped lazily on access.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _store(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (str(value), self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store(key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def has_key(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def get_ttl(self, key: str) -> Optional[int]:
        with self._lock:
            if self._live(key) is None:
                return None
            _, expires_at = self._entries[key]
            return max(0, int(round(expires_at - self._clock())))

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [self._live(key) for key in keys]

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store(key, value, ttl_seconds)
            return True

    async def increment_with_ceiling(
        self, key: str, ceiling: int, ttl_seconds: int
    ) -> Tuple[bool, int]:
        with self._lock:
            current = int(self._live(key) or 0)
            if current >= ceiling:
                return False, current
            current += 1
            self._store(key, str(current), ttl_seconds)
            return True, current

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
