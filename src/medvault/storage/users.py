"""User directory: protocol + implementations."""

from __future__ import annotations

import dataclasses
import threading
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from medvault.errors import NotFound, ValidationError
from medvault.models import ROLES, User, normalize_wallet

if TYPE_CHECKING:
    import psycopg

__all__ = ["UserDirectoryProtocol", "InMemoryUserDirectory", "PostgresUserDirectory"]


class UserDirectoryProtocol(Protocol):
    """Lookups and soft mutations over ``users``. Rows are never deleted."""

    def get_by_wallet(self, wallet_address: str) -> User | None:
        ...

    def register(
        self,
        wallet_address: str,
        role: str,
        full_name: str = "",
        email: str = "",
    ) -> User:
        """Create a user, or return the existing one for the same wallet."""
        ...

    def set_verified(self, wallet_address: str, verified: bool) -> User:
        ...

    def touch_login(self, wallet_address: str) -> None:
        ...


def _check_registration(wallet: str, role: str) -> None:
    if not wallet:
        raise ValidationError("wallet_address is required")
    if role not in ROLES:
        raise ValidationError(f"role must be one of {sorted(ROLES)}")


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryUserDirectory:
    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._lock = threading.Lock()

    def get_by_wallet(self, wallet_address: str) -> User | None:
        return self._users.get(normalize_wallet(wallet_address))

    def register(
        self,
        wallet_address: str,
        role: str,
        full_name: str = "",
        email: str = "",
    ) -> User:
        wallet = normalize_wallet(wallet_address)
        _check_registration(wallet, role)
        with self._lock:
            existing = self._users.get(wallet)
            if existing is not None:
                if existing.role != role:
                    raise ValidationError("wallet is already registered with another role")
                return existing
            user = User(
                id=str(uuid.uuid4()),
                wallet_address=wallet,
                role=role,  # type: ignore[arg-type]
                full_name=full_name,
                email=email,
                created_at=datetime.now(UTC),
            )
            self._users[wallet] = user
            return user

    def set_verified(self, wallet_address: str, verified: bool) -> User:
        wallet = normalize_wallet(wallet_address)
        with self._lock:
            user = self._users.get(wallet)
            if user is None:
                raise NotFound("user not found")
            updated = dataclasses.replace(user, verified=verified)
            self._users[wallet] = updated
            return updated

    def touch_login(self, wallet_address: str) -> None:
        wallet = normalize_wallet(wallet_address)
        with self._lock:
            user = self._users.get(wallet)
            if user is not None:
                self._users[wallet] = dataclasses.replace(user, last_login_at=datetime.now(UTC))


# ── PostgreSQL implementation ────────────────────────────

_COLUMNS = "id, wallet_address, role, verified, full_name, email, created_at, last_login_at"


def _row_to_user(row: tuple[Any, ...]) -> User:
    return User(
        id=str(row[0]),
        wallet_address=row[1],
        role=row[2],
        verified=bool(row[3]),
        full_name=row[4] or "",
        email=row[5] or "",
        created_at=row[6],
        last_login_at=row[7],
    )


class PostgresUserDirectory:
    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    def get_by_wallet(self, wallet_address: str) -> User | None:
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM users WHERE wallet_address = %s",  # noqa: S608
                (normalize_wallet(wallet_address),),
            )
            row = cur.fetchone()
        return _row_to_user(row) if row else None

    def register(
        self,
        wallet_address: str,
        role: str,
        full_name: str = "",
        email: str = "",
    ) -> User:
        wallet = normalize_wallet(wallet_address)
        _check_registration(wallet, role)
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, wallet_address, role, full_name, email, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (wallet_address) DO NOTHING
                """,
                (str(uuid.uuid4()), wallet, role, full_name, email, datetime.now(UTC)),
            )
        self._conn.commit()
        user = self.get_by_wallet(wallet)
        if user is None:  # pragma: no cover
            raise NotFound("user not found after insert")
        if user.role != role:
            raise ValidationError("wallet is already registered with another role")
        return user

    def set_verified(self, wallet_address: str, verified: bool) -> User:
        with self._conn.cursor() as cur:
            cur.execute(
                f"UPDATE users SET verified = %s WHERE wallet_address = %s RETURNING {_COLUMNS}",  # noqa: S608
                (verified, normalize_wallet(wallet_address)),
            )
            row = cur.fetchone()
        self._conn.commit()
        if row is None:
            raise NotFound("user not found")
        return _row_to_user(row)

    def touch_login(self, wallet_address: str) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                "UPDATE users SET last_login_at = %s WHERE wallet_address = %s",
                (datetime.now(UTC), normalize_wallet(wallet_address)),
            )
        self._conn.commit()
