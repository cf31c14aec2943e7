"""User registration, identity and admin verification."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, status
from pydantic import BaseModel, Field

from medvault.api.deps import (
    ResolvedIdentity,
    Services,
    current_identity,
    get_services,
    require_identity,
    require_role,
)
from medvault.errors import Forbidden, ValidationError
from medvault.logging import mask_wallet
from medvault.models import normalize_wallet

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)

# Admins are provisioned out of band
_SELF_SERVICE_ROLES = frozenset({"patient", "doctor"})


class RegisterIn(BaseModel):
    role: str = Field(min_length=1)
    full_name: str = ""
    email: str = ""


class VerifyIn(BaseModel):
    verified: bool = True


@router.post(
    "/users",
    status_code=status.HTTP_201_CREATED,
    summary="Register the calling wallet",
    operation_id="register_user",
)
async def register_user(
    body: RegisterIn,
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(current_identity),
    x_wallet_address: str | None = Header(default=None),
) -> dict[str, Any]:
    """Registration is idempotent for the same wallet and role."""
    wallet = identity.wallet_address or normalize_wallet(x_wallet_address)
    if not wallet:
        raise ValidationError("X-Wallet-Address header is required")
    if body.role not in _SELF_SERVICE_ROLES:
        raise Forbidden(f"role {body.role!r} cannot be self-registered")
    user = await asyncio.to_thread(
        services.users.register, wallet, body.role, body.full_name, body.email
    )
    logger.info("Registered %s as %s", mask_wallet(wallet), user.role)
    return user.to_dict()


@router.get("/users/me", summary="Resolved identity of the caller", operation_id="me")
async def me(identity: ResolvedIdentity = Depends(require_identity)) -> dict[str, Any]:
    return {
        "role": identity.role,
        "wallet_address": identity.wallet_address,
        "source": identity.source,
        "user": identity.user.to_dict() if identity.user else None,
    }


@router.post(
    "/admin/users/{wallet_address}/verify",
    summary="Mark a user verified (admin)",
    operation_id="verify_user",
)
async def verify_user(
    wallet_address: str,
    body: VerifyIn | None = None,
    services: Services = Depends(get_services),
    admin: ResolvedIdentity = Depends(require_role("admin")),
) -> dict[str, Any]:
    verified = body.verified if body is not None else True
    user = await asyncio.to_thread(services.users.set_verified, wallet_address, verified)
    logger.info(
        "Admin %s set verified=%s for %s",
        mask_wallet(admin.wallet_address),
        verified,
        mask_wallet(user.wallet_address),
    )
    return user.to_dict()
