"""Server-issued sessions (``user_sessions``): protocol + implementations."""

from __future__ import annotations

import dataclasses
import secrets
import threading
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from medvault.models import AuthSession, normalize_wallet

if TYPE_CHECKING:
    import psycopg

__all__ = ["SessionStoreProtocol", "InMemorySessionStore", "PostgresSessionStore"]

# Inactive sessions are kept this long for audit before cleanup removes them
_INACTIVE_RETENTION = timedelta(days=7)


class SessionStoreProtocol(Protocol):
    def create(self, wallet_address: str, ttl: timedelta) -> AuthSession:
        ...

    def validate(self, session_token: str) -> AuthSession | None:
        """Return the session if active and unexpired, touching last_activity."""
        ...

    def invalidate(self, session_token: str, reason: str = "user_logout") -> bool:
        """Mark inactive. Returns False if missing or already inactive."""
        ...

    def cleanup(self) -> int:
        """Delete expired sessions and long-inactive ones. Returns count."""
        ...


# ── In-memory implementation (dev / tests) ──────────────


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, AuthSession] = {}
        self._lock = threading.Lock()

    def create(self, wallet_address: str, ttl: timedelta) -> AuthSession:
        now = datetime.now(UTC)
        session = AuthSession(
            session_token=secrets.token_urlsafe(32),
            wallet_address=normalize_wallet(wallet_address),
            created_at=now,
            expires_at=now + ttl,
            last_activity=now,
        )
        with self._lock:
            self._sessions[session.session_token] = session
        return session

    def validate(self, session_token: str) -> AuthSession | None:
        now = datetime.now(UTC)
        with self._lock:
            session = self._sessions.get(session_token)
            if session is None or not session.is_valid(now):
                return None
            session = dataclasses.replace(session, last_activity=now)
            self._sessions[session_token] = session
            return session

    def invalidate(self, session_token: str, reason: str = "user_logout") -> bool:
        with self._lock:
            session = self._sessions.get(session_token)
            if session is None or not session.active:
                return False
            self._sessions[session_token] = dataclasses.replace(
                session,
                active=False,
                terminated_reason=reason,
                last_activity=datetime.now(UTC),
            )
            return True

    def cleanup(self) -> int:
        now = datetime.now(UTC)
        with self._lock:
            stale = [
                token
                for token, s in self._sessions.items()
                if s.expires_at < now
                or (not s.active and (s.last_activity or s.created_at) < now - _INACTIVE_RETENTION)
            ]
            for token in stale:
                del self._sessions[token]
        return len(stale)


# ── PostgreSQL implementation ────────────────────────────

_COLUMNS = (
    "session_token, wallet_address, active, created_at, expires_at, "
    "last_activity, terminated_reason"
)


def _row_to_session(row: tuple[Any, ...]) -> AuthSession:
    return AuthSession(
        session_token=row[0],
        wallet_address=row[1],
        active=bool(row[2]),
        created_at=row[3],
        expires_at=row[4],
        last_activity=row[5],
        terminated_reason=row[6] or "",
    )


class PostgresSessionStore:
    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    def create(self, wallet_address: str, ttl: timedelta) -> AuthSession:
        now = datetime.now(UTC)
        session = AuthSession(
            session_token=secrets.token_urlsafe(32),
            wallet_address=normalize_wallet(wallet_address),
            created_at=now,
            expires_at=now + ttl,
            last_activity=now,
        )
        with self._conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO user_sessions ({_COLUMNS}) "  # noqa: S608
                "VALUES (%s, %s, %s, %s, %s, %s, %s)",
                (
                    session.session_token,
                    session.wallet_address,
                    session.active,
                    session.created_at,
                    session.expires_at,
                    session.last_activity,
                    session.terminated_reason,
                ),
            )
        self._conn.commit()
        return session

    def validate(self, session_token: str) -> AuthSession | None:
        with self._conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE user_sessions SET last_activity = NOW()
                WHERE session_token = %s AND active = TRUE AND expires_at > NOW()
                RETURNING {_COLUMNS}
                """,  # noqa: S608
                (session_token,),
            )
            row = cur.fetchone()
        self._conn.commit()
        return _row_to_session(row) if row else None

    def invalidate(self, session_token: str, reason: str = "user_logout") -> bool:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE user_sessions
                SET active = FALSE, terminated_reason = %s, last_activity = NOW()
                WHERE session_token = %s AND active = TRUE
                """,
                (reason, session_token),
            )
            changed = cur.rowcount > 0
        self._conn.commit()
        return changed

    def cleanup(self) -> int:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM user_sessions
                WHERE expires_at < NOW()
                   OR (active = FALSE AND last_activity < NOW() - INTERVAL '7 days')
                """
            )
            deleted = cur.rowcount
        self._conn.commit()
        return deleted
