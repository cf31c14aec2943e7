"""One actor's authentication state: sign-in, re-resolution and logout."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from medvault.errors import Forbidden, InvalidTransition, ValidationError
from medvault.identity.resolver import IdentityResolver, StaticWallet, StoreSessionProvider
from medvault.identity.teardown import LogoutCoordinator, LogoutStep, SessionLifecycle
from medvault.logging import mask_wallet
from medvault.models import normalize_wallet

if TYPE_CHECKING:
    from medvault.identity.resolver import ResolvedIdentity
    from medvault.storage.sessions import SessionStoreProtocol
    from medvault.storage.users import UserDirectoryProtocol

__all__ = ["ActorSession"]

logger = logging.getLogger(__name__)


class ActorSession:
    """Binds a resolver, a session token and a wallet to one lifecycle.

    All identity reads go through :attr:`resolver`; all logouts go through
    :meth:`request_logout`, which owns the teardown flag.
    """

    def __init__(
        self,
        users: UserDirectoryProtocol,
        sessions: SessionStoreProtocol,
        *,
        session_ttl: timedelta = timedelta(hours=24),
        grace_seconds: float = 1.0,
        session_token: str | None = None,
        lifecycle: SessionLifecycle | None = None,
    ) -> None:
        self._users = users
        self._sessions = sessions
        self._ttl = session_ttl
        self.lifecycle = lifecycle or SessionLifecycle(grace_seconds=grace_seconds)
        self.wallet = StaticWallet()
        self._provider = StoreSessionProvider(sessions, session_token)
        self.resolver = IdentityResolver(
            sessions=self._provider,
            users=users,
            wallet=self.wallet,
            lifecycle=self.lifecycle,
        )

    @property
    def session_token(self) -> str | None:
        return self._provider.token

    def connect_wallet(self, address: str | None) -> None:
        self.wallet.address = normalize_wallet(address) or None

    async def sign_in(self, wallet_address: str) -> ResolvedIdentity:
        """Open a server session for a registered wallet and resolve it."""
        if self.lifecycle.is_tearing_down:
            raise InvalidTransition("cannot sign in while a logout is in progress")
        wallet = normalize_wallet(wallet_address)
        if not wallet:
            raise ValidationError("wallet_address is required")
        user = await asyncio.to_thread(self._users.get_by_wallet, wallet)
        if user is None:
            raise Forbidden("wallet is not registered")

        session = await asyncio.to_thread(self._sessions.create, wallet, self._ttl)
        self._provider.token = session.session_token
        self.wallet.address = wallet
        await asyncio.to_thread(self._users.touch_login, wallet)
        logger.info("Signed in %s as %s", mask_wallet(wallet), user.role)
        return await self.resolver.handle_auth_event("SIGNED_IN")

    def request_logout(self) -> asyncio.Task[bool]:
        """Flag the teardown immediately and run the logout steps."""
        return LogoutCoordinator(self.lifecycle, self._logout_steps()).request_logout()

    async def logout(self) -> bool:
        return await self.request_logout()

    def _logout_steps(self) -> list[LogoutStep]:
        token = self._provider.token

        async def invalidate_server_session() -> None:
            if token:
                await asyncio.to_thread(self._sessions.invalidate, token, "user_logout")

        async def sign_out() -> None:
            self._provider.token = None

        async def disconnect_wallet() -> None:
            self.wallet.address = None

        async def verify() -> None:
            if await self._provider.current_session() is not None:
                raise RuntimeError("session still present")
            if token and await asyncio.to_thread(self._sessions.validate, token) is not None:
                raise RuntimeError("server session still valid")
            if self.wallet.connected_address():
                raise RuntimeError("wallet still connected")

        return [
            LogoutStep("invalidate server session", invalidate_server_session, required=True),
            LogoutStep("sign out", sign_out, required=True),
            LogoutStep("disconnect wallet", disconnect_wallet, required=False),
            LogoutStep("verify logout", verify, required=True),
        ]
