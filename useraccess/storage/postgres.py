from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from useraccess.logging import get_logger
from useraccess.storage.errors import ConstraintViolation
from useraccess.storage.models import (
    UPDATABLE_FIELDS,
    Account,
    AccountStatus,
    Provider,
    Role,
)

_ACCOUNT_COLUMNS = (
    "id, email, password_hash, role, status, provider, email_verified, "
    "full_name, birth_date, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``account`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT,
                    role TEXT NOT NULL DEFAULT 'USER',
                    status TEXT NOT NULL DEFAULT 'INCOMPLETE',
                    provider TEXT NOT NULL DEFAULT 'LOCAL',
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    full_name TEXT,
                    birth_date DATE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        now = datetime.now(timezone.utc)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            role=Role(row.get("role") or Role.USER.value),
            status=AccountStatus(row.get("status") or AccountStatus.INCOMPLETE.value),
            provider=Provider(row.get("provider") or Provider.LOCAL.value),
            email_verified=bool(row.get("email_verified", False)),
            full_name=row.get("full_name"),
            birth_date=row.get("birth_date"),
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, (Role, AccountStatus, Provider)):
            return value.value
        return value

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO account (id, email, password_hash, role, status, provider, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account_id,
                        email,
                        password_hash,
                        role.value,
                        status.value,
                        provider.value,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(
        self,
        account_id: str,
        *,
        expected_status: Optional[AccountStatus] = None,
        **fields,
    ) -> Optional[Account]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        # Column names come from the UPDATABLE_FIELDS allowlist
        names = sorted(fields)
        assignments = ", ".join(f"{name} = %s" for name in names)
        params = [self._column_value(fields[name]) for name in names]
        params.append(account_id)
        condition = "id = %s"
        if expected_status is not None:
            # compare-and-set so concurrent transitions apply once
            condition += " AND status = %s"
            params.append(expected_status.value)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account SET {assignments}, updated_at = now()
                WHERE {condition}
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                params,
            ).fetchone()
        return self._account_from_row(row) if row else None

    def ensure_account(self, email: str, **defaults) -> Tuple[Account, bool]:
        """Find an account by email or create it; returns (account, created)."""
        existing = self.get_account_by_email(email)
        if existing:
            return existing, False
        try:
            return self.create_account(email, **defaults), True
        except ConstraintViolation:
            # Lost a concurrent insert race; the winner's row is authoritative
            winner = self.get_account_by_email(email)
            if winner is None:
                raise
            return winner, False

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
