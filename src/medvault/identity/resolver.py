"""Identity resolution: one authoritative role from session + wallet.

Priority order, first success wins:

1. A server-issued session carrying a wallet address → user by that wallet.
2. No session, but a wallet connected client-side → user by that wallet
   (accounts created before session-based auth).
3. Otherwise unauthenticated.

Users are never created here: an unknown wallet resolves to no role.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from medvault.errors import IdentityLookupFailed
from medvault.identity.teardown import TEARING_DOWN
from medvault.logging import mask_wallet
from medvault.models import AuthSession, User, normalize_wallet

if TYPE_CHECKING:
    from medvault.identity.teardown import SessionLifecycle
    from medvault.storage.sessions import SessionStoreProtocol
    from medvault.storage.users import UserDirectoryProtocol

__all__ = [
    "AUTH_EVENTS",
    "UNAUTHENTICATED",
    "IdentityResolver",
    "ResolvedIdentity",
    "SessionProvider",
    "StaticWallet",
    "StoreSessionProvider",
    "WalletConnection",
]

logger = logging.getLogger(__name__)

AUTH_EVENTS = frozenset({"SIGNED_IN", "SIGNED_OUT", "TOKEN_REFRESHED"})


@dataclass(frozen=True)
class ResolvedIdentity:
    role: str | None = None
    wallet_address: str | None = None
    user: User | None = None
    session_id: str | None = None
    source: str = "none"  # "session" | "wallet" | "none"

    @property
    def is_authenticated(self) -> bool:
        return self.role is not None


UNAUTHENTICATED = ResolvedIdentity()


class SessionProvider(Protocol):
    async def current_session(self) -> AuthSession | None:
        ...


class WalletConnection(Protocol):
    def connected_address(self) -> str | None:
        ...


class StoreSessionProvider:
    """Validates a bearer token against the session store."""

    def __init__(self, store: SessionStoreProtocol, token: str | None = None) -> None:
        self._store = store
        self.token = token

    async def current_session(self) -> AuthSession | None:
        if not self.token:
            return None
        return await asyncio.to_thread(self._store.validate, self.token)


class StaticWallet:
    """A wallet connection whose address is set by the caller."""

    def __init__(self, address: str | None = None) -> None:
        self.address = address

    def connected_address(self) -> str | None:
        return self.address or None


class IdentityResolver:
    """Keeps an in-memory projection of the current identity.

    ``resolve`` may run concurrently; each completion swaps the projection
    atomically and the last one to complete wins. Lookups that started
    before a teardown are discarded when they finish.
    """

    def __init__(
        self,
        sessions: SessionProvider,
        users: UserDirectoryProtocol,
        wallet: WalletConnection | None = None,
        lifecycle: SessionLifecycle | None = None,
    ) -> None:
        self._sessions = sessions
        self._users = users
        self._wallet = wallet
        self._lifecycle = lifecycle
        self._current = UNAUTHENTICATED
        if lifecycle is not None:
            lifecycle.subscribe(self._on_lifecycle)

    @property
    def current(self) -> ResolvedIdentity:
        return self._current

    async def resolve(self) -> ResolvedIdentity:
        """Resolve and publish the current identity.

        Raises IdentityLookupFailed on lookup errors; the previous projection
        is left untouched.
        """
        if self._blocked():
            self._current = UNAUTHENTICATED
            return UNAUTHENTICATED
        epoch = self._lifecycle.epoch if self._lifecycle is not None else 0

        try:
            identity = await self._lookup()
        except IdentityLookupFailed:
            raise
        except Exception as exc:
            logger.warning("Identity lookup failed", exc_info=True)
            raise IdentityLookupFailed("identity lookup failed") from exc

        if self._blocked() or (self._lifecycle is not None and self._lifecycle.epoch != epoch):
            logger.info("Discarding identity resolved across a logout")
            return UNAUTHENTICATED

        self._current = identity
        return identity

    async def handle_auth_event(self, event: str) -> ResolvedIdentity:
        """Re-resolve on session provider events.

        A token refresh keeps an already-resolved role instead of
        re-resolving, so the role never flickers to None.
        """
        if event not in AUTH_EVENTS:
            return self._current
        if event == "TOKEN_REFRESHED" and self._current.is_authenticated:
            return self._current
        logger.debug("Auth event %s, re-resolving identity", event)
        return await self.resolve()

    async def _lookup(self) -> ResolvedIdentity:
        session = await self._sessions.current_session()
        if session is not None:
            wallet = normalize_wallet(session.wallet_address)
            if not wallet:
                return UNAUTHENTICATED
            user = await asyncio.to_thread(self._users.get_by_wallet, wallet)
            if user is None:
                logger.info("Session wallet %s has no user row", mask_wallet(wallet))
                return UNAUTHENTICATED
            return ResolvedIdentity(
                role=user.role,
                wallet_address=user.wallet_address,
                user=user,
                session_id=session.session_token,
                source="session",
            )

        connected = normalize_wallet(self._wallet.connected_address() if self._wallet else None)
        if connected:
            user = await asyncio.to_thread(self._users.get_by_wallet, connected)
            if user is not None:
                return ResolvedIdentity(
                    role=user.role,
                    wallet_address=user.wallet_address,
                    user=user,
                    source="wallet",
                )
            logger.info("Connected wallet %s is not registered", mask_wallet(connected))
        return UNAUTHENTICATED

    def _blocked(self) -> bool:
        return self._lifecycle is not None and self._lifecycle.is_tearing_down

    def _on_lifecycle(self, state: str) -> None:
        if state == TEARING_DOWN:
            self._current = UNAUTHENTICATED
