"""Record repository: protocol + implementations.

Rows are insert-only except for the soft-delete marker; owner and content
address are never updated.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from medvault.models import Record, normalize_wallet

if TYPE_CHECKING:
    import psycopg

__all__ = ["RecordRepositoryProtocol", "InMemoryRecordRepository", "PostgresRecordRepository"]


class RecordRepositoryProtocol(Protocol):
    def add(self, record: Record) -> Record:
        ...

    def get(self, record_id: str) -> Record | None:
        ...

    def get_many(self, record_ids: list[str]) -> dict[str, Record]:
        """Return the records that exist, keyed by id (missing ids omitted)."""
        ...

    def list_for_owner(self, owner_wallet: str, include_deleted: bool = False) -> list[Record]:
        """Newest first."""
        ...

    def count_live_by_content_address(self, content_address: str) -> int:
        """Records not yet soft-deleted that point at *content_address*."""
        ...

    def mark_deleted(self, record_id: str) -> Record | None:
        ...


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryRecordRepository:
    def __init__(self) -> None:
        self._records: dict[str, Record] = {}
        self._lock = threading.Lock()

    def add(self, record: Record) -> Record:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"record {record.id} already exists")
            self._records[record.id] = record
        return record

    def get(self, record_id: str) -> Record | None:
        return self._records.get(record_id)

    def get_many(self, record_ids: list[str]) -> dict[str, Record]:
        return {rid: self._records[rid] for rid in record_ids if rid in self._records}

    def list_for_owner(self, owner_wallet: str, include_deleted: bool = False) -> list[Record]:
        wallet = normalize_wallet(owner_wallet)
        out = [
            r
            for r in self._records.values()
            if r.owner_wallet == wallet and (include_deleted or not r.is_deleted)
        ]
        return sorted(out, key=lambda r: r.uploaded_at, reverse=True)

    def count_live_by_content_address(self, content_address: str) -> int:
        return sum(
            1
            for r in self._records.values()
            if r.content_address == content_address and not r.is_deleted
        )

    def mark_deleted(self, record_id: str) -> Record | None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            if not record.is_deleted:
                record = dataclasses.replace(record, deleted_at=datetime.now(UTC))
                self._records[record_id] = record
            return record


# ── PostgreSQL implementation ────────────────────────────

_COLUMNS = (
    "id, owner_wallet, title, file_type, content_address, size_bytes, "
    "uploaded_at, record_type, description, deleted_at"
)


def _row_to_record(row: tuple[Any, ...]) -> Record:
    return Record(
        id=str(row[0]),
        owner_wallet=row[1],
        title=row[2],
        file_type=row[3],
        content_address=row[4],
        size_bytes=int(row[5]),
        uploaded_at=row[6],
        record_type=row[7],
        description=row[8] or "",
        deleted_at=row[9],
    )


class PostgresRecordRepository:
    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    def add(self, record: Record) -> Record:
        with self._conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO ehr_records ({_COLUMNS}) "  # noqa: S608
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    record.id,
                    record.owner_wallet,
                    record.title,
                    record.file_type,
                    record.content_address,
                    record.size_bytes,
                    record.uploaded_at,
                    record.record_type,
                    record.description,
                    record.deleted_at,
                ),
            )
        self._conn.commit()
        return record

    def get(self, record_id: str) -> Record | None:
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM ehr_records WHERE id = %s",  # noqa: S608
                (record_id,),
            )
            row = cur.fetchone()
        return _row_to_record(row) if row else None

    def get_many(self, record_ids: list[str]) -> dict[str, Record]:
        if not record_ids:
            return {}
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM ehr_records WHERE id = ANY(%s)",  # noqa: S608
                (list(record_ids),),
            )
            rows = cur.fetchall()
        return {str(r[0]): _row_to_record(r) for r in rows}

    def list_for_owner(self, owner_wallet: str, include_deleted: bool = False) -> list[Record]:
        deleted_clause = "" if include_deleted else " AND deleted_at IS NULL"
        with self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM ehr_records "  # noqa: S608
                f"WHERE owner_wallet = %s{deleted_clause} ORDER BY uploaded_at DESC",
                (normalize_wallet(owner_wallet),),
            )
            rows = cur.fetchall()
        return [_row_to_record(r) for r in rows]

    def count_live_by_content_address(self, content_address: str) -> int:
        with self._conn.cursor() as cur:
            cur.execute(
                "SELECT count(*) FROM ehr_records "
                "WHERE content_address = %s AND deleted_at IS NULL",
                (content_address,),
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def mark_deleted(self, record_id: str) -> Record | None:
        with self._conn.cursor() as cur:
            cur.execute(
                "UPDATE ehr_records SET deleted_at = %s WHERE id = %s AND deleted_at IS NULL",
                (datetime.now(UTC), record_id),
            )
        self._conn.commit()
        return self.get(record_id)
