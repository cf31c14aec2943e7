"""Service wiring and per-request identity dependencies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from fastapi import Depends, Header, Request

from medvault.custody import CustodyService
from medvault.errors import Forbidden, Unauthenticated
from medvault.grants.idempotency import (
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    get_redis_client,
)
from medvault.grants.store import AccessGrantStore
from medvault.identity.resolver import (
    IdentityResolver,
    ResolvedIdentity,
    StaticWallet,
    StoreSessionProvider,
)
from medvault.identity.teardown import ACTIVE, SessionLifecycle
from medvault.objectstore.adapter import ObjectStoreAdapter
from medvault.storage.access_requests import (
    InMemoryAccessRequestRepository,
    PostgresAccessRequestRepository,
)
from medvault.storage.event_store import InMemoryLedger, PostgresLedger
from medvault.storage.postgres import ensure_schema, get_connection
from medvault.storage.records import InMemoryRecordRepository, PostgresRecordRepository
from medvault.storage.sessions import InMemorySessionStore, PostgresSessionStore
from medvault.storage.users import InMemoryUserDirectory, PostgresUserDirectory

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    import psycopg
    import redis

    from medvault.grants.idempotency import IdempotencyStoreProtocol
    from medvault.settings import Settings
    from medvault.storage.event_store import LedgerProtocol
    from medvault.storage.records import RecordRepositoryProtocol
    from medvault.storage.sessions import SessionStoreProtocol
    from medvault.storage.users import UserDirectoryProtocol

__all__ = [
    "Services",
    "build_services",
    "current_identity",
    "get_services",
    "require_identity",
    "require_role",
]

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    users: UserDirectoryProtocol
    sessions: SessionStoreProtocol
    records: RecordRepositoryProtocol
    grants: AccessGrantStore
    object_store: ObjectStoreAdapter
    custody: CustodyService
    ledger: LedgerProtocol
    idempotency: IdempotencyStoreProtocol
    pg_conn: psycopg.Connection[Any] | None = None
    redis_client: redis.Redis | None = None  # type: ignore[type-arg]
    # teardown state of in-flight logouts, keyed by session token
    logouts: dict[str, SessionLifecycle] = field(default_factory=dict)

    def lifecycle_for(self, token: str) -> SessionLifecycle:
        """Teardown state shared by every request carrying *token*.

        An entry lives only while a logout for the token is unsettled.
        """
        lifecycle = self.logouts.get(token)
        if lifecycle is None:
            lifecycle = SessionLifecycle(grace_seconds=self.settings.logout_grace_seconds)
            self.logouts[token] = lifecycle

            def _drop(state: str) -> None:
                if state == ACTIVE:
                    self.release_lifecycle(token, lifecycle)

            lifecycle.subscribe(_drop)
        return lifecycle

    def release_lifecycle(self, token: str, lifecycle: SessionLifecycle) -> None:
        if not lifecycle.is_tearing_down and self.logouts.get(token) is lifecycle:
            del self.logouts[token]

    async def close(self) -> None:
        await self.object_store.close()
        if self.redis_client is not None:
            self.redis_client.close()
        if self.pg_conn is not None:
            self.pg_conn.close()


def build_services(
    settings: Settings,
    *,
    object_store: ObjectStoreAdapter | None = None,
) -> Services:
    """Build stores for *settings*: PostgreSQL when ``pg_dsn`` is set, else in memory."""
    pg_conn = None
    if settings.pg_dsn:
        pg_conn = get_connection(settings.pg_dsn)
        ensure_schema(pg_conn)
        users: UserDirectoryProtocol = PostgresUserDirectory(pg_conn)
        sessions: SessionStoreProtocol = PostgresSessionStore(pg_conn)
        records: RecordRepositoryProtocol = PostgresRecordRepository(pg_conn)
        requests: Any = PostgresAccessRequestRepository(pg_conn)
        ledger: LedgerProtocol = PostgresLedger(pg_conn)
    else:
        logger.warning("MEDVAULT_PG_DSN is not set, using in-memory stores")
        users = InMemoryUserDirectory()
        sessions = InMemorySessionStore()
        records = InMemoryRecordRepository()
        requests = InMemoryAccessRequestRepository()
        ledger = InMemoryLedger()

    redis_client = None
    idempotency: IdempotencyStoreProtocol
    if settings.redis_url:
        redis_client = get_redis_client(settings.redis_url)
        idempotency = RedisIdempotencyStore(redis_client, settings.idempotency_ttl_seconds)
    else:
        idempotency = InMemoryIdempotencyStore(settings.idempotency_ttl_seconds)

    store = object_store or ObjectStoreAdapter.from_settings(settings)
    grants = AccessGrantStore(records, requests, ledger=ledger, idempotency=idempotency)
    return Services(
        settings=settings,
        users=users,
        sessions=sessions,
        records=records,
        grants=grants,
        object_store=store,
        custody=CustodyService(records, grants, store, ledger=ledger),
        ledger=ledger,
        idempotency=idempotency,
        pg_conn=pg_conn,
        redis_client=redis_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services  # type: ignore[no-any-return]


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def current_identity(
    services: Services = Depends(get_services),
    authorization: str | None = Header(default=None),
    x_wallet_address: str | None = Header(default=None),
) -> ResolvedIdentity:
    """Resolve the caller from a bearer session token and/or wallet header.

    A token whose logout is still in flight resolves unauthenticated.
    """
    token = bearer_token(authorization)
    resolver = IdentityResolver(
        sessions=StoreSessionProvider(services.sessions, token),
        users=services.users,
        wallet=StaticWallet(x_wallet_address),
        lifecycle=services.logouts.get(token) if token else None,
    )
    return await resolver.resolve()


async def require_identity(
    identity: ResolvedIdentity = Depends(current_identity),
) -> ResolvedIdentity:
    if not identity.is_authenticated:
        raise Unauthenticated("sign in required")
    return identity


def require_role(*roles: str) -> Callable[..., Coroutine[Any, Any, ResolvedIdentity]]:
    async def _dependency(
        identity: ResolvedIdentity = Depends(require_identity),
    ) -> ResolvedIdentity:
        if identity.role not in roles:
            raise Forbidden(f"requires role {' or '.join(roles)}")
        return identity

    return _dependency
