"""PostgreSQL connection management."""

from __future__ import annotations

import psycopg

from medvault.storage.schema import SCHEMA_SQL

__all__ = ["get_connection", "ensure_schema"]


def get_connection(dsn: str) -> psycopg.Connection[tuple[object, ...]]:
    """Create a new PostgreSQL connection."""
    return psycopg.connect(dsn, autocommit=False)


def ensure_schema(conn: psycopg.Connection[tuple[object, ...]]) -> None:
    """Create tables and indexes if missing (idempotent)."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()
