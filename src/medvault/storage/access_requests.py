"""Access-request persistence: protocol + implementations."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Protocol

from medvault.models import AccessRequest, normalize_wallet

if TYPE_CHECKING:
    import psycopg

__all__ = [
    "AccessRequestRepositoryProtocol",
    "InMemoryAccessRequestRepository",
    "PostgresAccessRequestRepository",
]


class AccessRequestRepositoryProtocol(Protocol):
    def add(self, request: AccessRequest) -> AccessRequest:
        """Insert a new request.

        If ``request.idempotency_key`` is already stored, the existing row is
        returned and nothing is written.
        """
        ...

    def get(self, request_id: str) -> AccessRequest | None:
        ...

    def compare_and_set(self, expected_status: str, updated: AccessRequest) -> bool:
        """Replace the row only if its stored status is still *expected_status*."""
        ...

    def list_for_wallet(self, wallet_address: str, side: str) -> list[AccessRequest]:
        """List by ``patient`` or ``doctor`` wallet, newest first."""
        ...

    def list_by_status(self, status: str) -> list[AccessRequest]:
        ...


def _column_for(side: str) -> str:
    if side == "patient":
        return "patient_wallet"
    if side == "doctor":
        return "doctor_wallet"
    raise ValueError(f"unknown side: {side}")


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryAccessRequestRepository:
    def __init__(self) -> None:
        self._rows: dict[str, AccessRequest] = {}
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, request: AccessRequest) -> AccessRequest:
        with self._lock:
            key = request.idempotency_key
            if key and key in self._by_key:
                return self._rows[self._by_key[key]]
            self._rows[request.id] = request
            if key:
                self._by_key[key] = request.id
        return request

    def get(self, request_id: str) -> AccessRequest | None:
        return self._rows.get(request_id)

    def compare_and_set(self, expected_status: str, updated: AccessRequest) -> bool:
        with self._lock:
            current = self._rows.get(updated.id)
            if current is None or current.status != expected_status:
                return False
            self._rows[updated.id] = updated
            return True

    def list_for_wallet(self, wallet_address: str, side: str) -> list[AccessRequest]:
        attr = _column_for(side)
        wallet = normalize_wallet(wallet_address)
        out = [r for r in self._rows.values() if getattr(r, attr) == wallet]
        return sorted(out, key=lambda r: r.sent_at, reverse=True)

    def list_by_status(self, status: str) -> list[AccessRequest]:
        return [r for r in self._rows.values() if r.status == status]


# ── PostgreSQL implementation ────────────────────────────

_COLUMNS = (
    "id, doctor_wallet, patient_wallet, requested_record_ids, document_names_snapshot, "
    "purpose, status, urgency, sent_at, expires_at, responded_at, denial_reason, "
    "idempotency_key"
)


def _row_to_request(row: tuple[Any, ...]) -> AccessRequest:
    return AccessRequest(
        id=str(row[0]),
        doctor_wallet=row[1],
        patient_wallet=row[2],
        requested_record_ids=frozenset(row[3] or []),
        document_names_snapshot=tuple(row[4] or []),
        purpose=row[5],
        status=row[6],
        urgency=row[7],
        sent_at=row[8],
        expires_at=row[9],
        responded_at=row[10],
        denial_reason=row[11] or "",
        idempotency_key=row[12],
    )


class PostgresAccessRequestRepository:
    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    def add(self, request: AccessRequest) -> AccessRequest:
        with self._conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO access_requests ({_COLUMNS}) "  # noqa: S608
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                "ON CONFLICT (idempotency_key) DO NOTHING",
                (
                    request.id,
                    request.doctor_wallet,
                    request.patient_wallet,
                    sorted(request.requested_record_ids),
                    list(request.document_names_snapshot),
                    request.purpose,
                    request.status,
                    request.urgency,
                    request.sent_at,
                    request.expires_at,
                    request.responded_at,
                    request.denial_reason,
                    request.idempotency_key,
                ),
            )
            inserted = cur.rowcount == 1
        self._conn.commit()
        if inserted or not request.idempotency_key:
            return request
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM access_requests WHERE idempotency_key = %s",  # noqa: S608
                (request.idempotency_key,),
            )
            row = cur.fetchone()
        return _row_to_request(row) if row else request

    def get(self, request_id: str) -> AccessRequest | None:
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM access_requests WHERE id = %s",  # noqa: S608
                (request_id,),
            )
            row = cur.fetchone()
        return _row_to_request(row) if row else None

    def compare_and_set(self, expected_status: str, updated: AccessRequest) -> bool:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE access_requests
                SET status = %s, responded_at = %s, denial_reason = %s
                WHERE id = %s AND status = %s
                """,
                (
                    updated.status,
                    updated.responded_at,
                    updated.denial_reason,
                    updated.id,
                    expected_status,
                ),
            )
            changed = cur.rowcount == 1
        self._conn.commit()
        return changed

    def list_for_wallet(self, wallet_address: str, side: str) -> list[AccessRequest]:
        column = _column_for(side)
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM access_requests "  # noqa: S608
                f"WHERE {column} = %s ORDER BY sent_at DESC",
                (normalize_wallet(wallet_address),),
            )
            rows = cur.fetchall()
        return [_row_to_request(r) for r in rows]

    def list_by_status(self, status: str) -> list[AccessRequest]:
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM access_requests WHERE status = %s",  # noqa: S608
                (status,),
            )
            rows = cur.fetchall()
        return [_row_to_request(r) for r in rows]
