"""Client idempotency keys for access-request creation."""

from __future__ import annotations

import logging
import threading
import time
from typing import Protocol

import redis

from medvault.errors import StoreUnavailable

__all__ = [
    "IdempotencyStoreProtocol",
    "InMemoryIdempotencyStore",
    "RedisIdempotencyStore",
    "get_redis_client",
]

logger = logging.getLogger(__name__)

KEY_PREFIX = "medvault:idem:access_request:"


class IdempotencyStoreProtocol(Protocol):
    def claim(self, key: str, candidate_id: str) -> str:
        """Bind *key* to *candidate_id* unless already bound.

        Returns the id the key is bound to (the candidate on first claim).
        """
        ...

    def prune(self) -> int:
        """Drop expired claims. Returns how many were removed."""
        ...


class InMemoryIdempotencyStore:
    def __init__(self, ttl_seconds: int = 86400) -> None:
        self._ttl = ttl_seconds
        self._claims: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, candidate_id: str) -> str:
        now = time.monotonic()
        with self._lock:
            bound = self._claims.get(key)
            if bound is not None and bound[1] > now:
                return bound[0]
            self._claims[key] = (candidate_id, now + self._ttl)
            return candidate_id

    def prune(self) -> int:
        now = time.monotonic()
        with self._lock:
            stale = [key for key, (_, deadline) in self._claims.items() if deadline <= now]
            for key in stale:
                del self._claims[key]
        return len(stale)


class RedisIdempotencyStore:
    """SET NX with TTL, shared by every API process."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 86400) -> None:  # type: ignore[type-arg]
        self._redis = client
        self._ttl = ttl_seconds

    def claim(self, key: str, candidate_id: str) -> str:
        try:
            return self._claim(KEY_PREFIX + key, candidate_id)
        except redis.RedisError as exc:
            logger.error("Idempotency claim failed: %s", exc)
            raise StoreUnavailable("idempotency store unavailable") from exc

    def _claim(self, redis_key: str, candidate_id: str) -> str:
        if self._redis.set(redis_key, candidate_id, nx=True, ex=self._ttl):
            return candidate_id
        bound = self._redis.get(redis_key)
        if bound is None:
            # Expired between SET and GET; take it over
            self._redis.set(redis_key, candidate_id, ex=self._ttl)
            return candidate_id
        return bound if isinstance(bound, str) else bound.decode()

    def prune(self) -> int:
        # keys carry their own TTL
        return 0


def get_redis_client(url: str = "redis://localhost:6379/0") -> redis.Redis:  # type: ignore[type-arg]
    """Create a Redis client."""
    return redis.Redis.from_url(url, decode_responses=True)
