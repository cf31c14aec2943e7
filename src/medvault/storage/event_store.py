"""Append-only audit ledger: protocol + implementations.

Access-request transitions and record uploads, reads and deletions are
recorded here. Callers never block on, or fail because of, a ledger write:
they go through :func:`emit_best_effort`.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import psycopg

__all__ = [
    "LedgerEvent",
    "LedgerProtocol",
    "InMemoryLedger",
    "PostgresLedger",
    "emit_best_effort",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEvent:
    event_id: str
    subject_id: str
    event_type: str
    actor: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "subject_id": self.subject_id,
            "event_type": self.event_type,
            "actor": self.actor,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload,
        }


class LedgerProtocol(Protocol):
    def append(
        self,
        subject_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> str:
        """Append an event and return its id.

        A repeated *idempotency_key* returns the id of the first event and
        writes nothing.
        """
        ...

    def list_events(
        self,
        subject_id: str | None = None,
        event_type: str | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[LedgerEvent]:
        """Newest first, optionally filtered."""
        ...


def emit_best_effort(
    ledger: LedgerProtocol | None,
    subject_id: str,
    event_type: str,
    payload: dict[str, Any],
    actor: str = "system",
) -> None:
    """Append without letting a ledger failure reach the caller."""
    if ledger is None:
        return
    try:
        ledger.append(
            subject_id=subject_id,
            event_type=event_type,
            payload=payload,
            actor=actor,
        )
    except Exception:
        logger.warning("Ledger append failed for %s on %s", event_type, subject_id, exc_info=True)


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryLedger:
    def __init__(self) -> None:
        self._events: list[LedgerEvent] = []
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def append(
        self,
        subject_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> str:
        with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            event = LedgerEvent(
                event_id=str(uuid.uuid4()),
                subject_id=subject_id,
                event_type=event_type,
                actor=actor,
                created_at=datetime.now(UTC),
                payload=dict(payload),
            )
            self._events.append(event)
            if idempotency_key:
                self._by_key[idempotency_key] = event.event_id
        return event.event_id

    def list_events(
        self,
        subject_id: str | None = None,
        event_type: str | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[LedgerEvent]:
        matches = (
            e
            for e in reversed(self._events)
            if (not subject_id or e.subject_id == subject_id)
            and (not event_type or e.event_type == event_type)
            and (not actor or e.actor == actor)
        )
        return [e for _, e in zip(range(limit), matches)]


# ── PostgreSQL implementation ────────────────────────────

_COLUMNS = "event_id, subject_id, event_type, actor, created_at, payload"


def _row_to_event(row: tuple[Any, ...]) -> LedgerEvent:
    payload = row[5]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return LedgerEvent(
        event_id=str(row[0]),
        subject_id=row[1],
        event_type=row[2],
        actor=row[3],
        created_at=row[4],
        payload=payload or {},
    )


class PostgresLedger:
    """Rows in ``ledger_events``; never updated or deleted."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    def append(
        self,
        subject_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> str:
        event_id = str(uuid.uuid4())
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO ledger_events
                    (event_id, subject_id, event_type, actor,
                     created_at, payload, idempotency_key)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING event_id
                """,
                (
                    event_id,
                    subject_id,
                    event_type,
                    actor,
                    datetime.now(UTC),
                    json.dumps(payload, sort_keys=True, default=str),
                    idempotency_key,
                ),
            )
            row = cur.fetchone()
            if row is None and idempotency_key:
                cur.execute(
                    "SELECT event_id FROM ledger_events WHERE idempotency_key = %s",
                    (idempotency_key,),
                )
                row = cur.fetchone()
        self._conn.commit()
        return str(row[0]) if row else event_id

    def list_events(
        self,
        subject_id: str | None = None,
        event_type: str | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[LedgerEvent]:
        filters = {"subject_id": subject_id, "event_type": event_type, "actor": actor}
        clauses = [f"{column} = %s" for column, value in filters.items() if value]
        params: list[Any] = [value for value in filters.values() if value]
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM ledger_events {where} "  # noqa: S608
                "ORDER BY created_at DESC LIMIT %s",
                [*params, limit],
            )
            rows = cur.fetchall()
        return [_row_to_event(r) for r in rows]
