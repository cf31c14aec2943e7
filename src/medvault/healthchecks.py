"""Readiness probes for the configured backends.

An empty DSN or URL means the service runs on the in-memory implementation
of that store, which is always ready. The pinning service has no in-memory
stand-in: without a credential the service cannot accept uploads.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Any

import psycopg
import redis

from medvault.objectstore.pinata import PinataError

if TYPE_CHECKING:
    from collections.abc import Callable

    from medvault.objectstore.pinata import PinataClient

__all__ = ["check_object_store", "check_postgres", "check_redis"]

logger = logging.getLogger(__name__)

_TIMEOUT = 2  # seconds


def _select_one(dsn: str) -> bool:
    with psycopg.connect(dsn, connect_timeout=_TIMEOUT) as conn, conn.cursor() as cur:
        cur.execute("SELECT 1")
        return cur.fetchone() is not None


def _ping(url: str) -> bool:
    client: redis.Redis = redis.Redis.from_url(  # type: ignore[type-arg]
        url,
        socket_timeout=_TIMEOUT,
        socket_connect_timeout=_TIMEOUT,
    )
    try:
        return bool(client.ping())
    finally:
        client.close()


async def _probe(name: str, func: Callable[..., bool], *args: Any) -> bool:
    try:
        return await asyncio.to_thread(partial(func, *args))
    except Exception:
        logger.warning("%s readiness probe failed", name, exc_info=True)
        return False


async def check_postgres(dsn: str) -> bool:
    if not dsn:
        return True
    return await _probe("postgres", _select_one, dsn)


async def check_redis(url: str) -> bool:
    if not url:
        return True
    return await _probe("redis", _ping, url)


async def check_object_store(client: PinataClient | None) -> bool:
    """Authenticate against Pinata. False when unconfigured or rejected."""
    if client is None:
        return False
    try:
        return await asyncio.wait_for(client.test_authentication(), timeout=_TIMEOUT)
    except (PinataError, TimeoutError):
        logger.warning("object store readiness probe failed", exc_info=True)
        return False
