"""Session sign-in and logout."""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Header, status
from pydantic import BaseModel, Field

from medvault.api.deps import Services, bearer_token, get_services
from medvault.errors import Unauthenticated
from medvault.identity.session import ActorSession
from medvault.identity.teardown import SessionLifecycle

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)


class SessionIn(BaseModel):
    wallet_address: str = Field(min_length=1)


class SessionOut(BaseModel):
    session_token: str
    wallet_address: str
    role: str


class LogoutOut(BaseModel):
    logged_out: bool
    state: str
    error: str = ""


def _actor_session(
    services: Services,
    token: str | None = None,
    lifecycle: SessionLifecycle | None = None,
) -> ActorSession:
    settings = services.settings
    return ActorSession(
        services.users,
        services.sessions,
        session_ttl=timedelta(hours=settings.session_ttl_hours),
        grace_seconds=settings.logout_grace_seconds,
        session_token=token,
        lifecycle=lifecycle,
    )


@router.post(
    "/auth/session",
    response_model=SessionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Open a session for a registered wallet",
    operation_id="create_session",
)
async def create_session(
    body: SessionIn,
    services: Services = Depends(get_services),
) -> SessionOut:
    actor = _actor_session(services)
    identity = await actor.sign_in(body.wallet_address)
    if not identity.is_authenticated or actor.session_token is None:
        raise Unauthenticated("sign in failed")
    return SessionOut(
        session_token=actor.session_token,
        wallet_address=identity.wallet_address or "",
        role=identity.role or "",
    )


@router.post(
    "/auth/logout",
    response_model=LogoutOut,
    summary="Invalidate the caller's session",
    operation_id="logout",
)
async def logout(
    services: Services = Depends(get_services),
    authorization: str | None = Header(default=None),
) -> LogoutOut:
    token = bearer_token(authorization)
    if token is None:
        raise Unauthenticated("bearer session token required")
    lifecycle = services.lifecycle_for(token)
    try:
        actor = _actor_session(services, token, lifecycle)
        await actor.resolver.resolve()
        ok = await actor.logout()
    finally:
        services.release_lifecycle(token, lifecycle)
    if not ok:
        logger.warning("Logout failed: %s", actor.lifecycle.last_error)
    return LogoutOut(
        logged_out=ok,
        state=actor.lifecycle.state,
        error=actor.lifecycle.last_error,
    )
