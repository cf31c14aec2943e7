"""Access-request endpoints: doctors ask, patients decide."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, Header, status
from pydantic import BaseModel, Field

from medvault.api.deps import (
    ResolvedIdentity,
    Services,
    get_services,
    require_identity,
    require_role,
)
from medvault.models import MIN_PURPOSE_LENGTH

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)


class AccessRequestIn(BaseModel):
    """A doctor's request for a set of a patient's records."""

    patient_wallet: str = Field(min_length=1)
    record_ids: list[str] = Field(min_length=1)
    purpose: str = Field(min_length=MIN_PURPOSE_LENGTH)
    duration_days: int
    urgency: str = "routine"


class RespondIn(BaseModel):
    decision: str
    denial_reason: str = ""


@router.post(
    "/access-requests",
    status_code=status.HTTP_201_CREATED,
    summary="Request access to patient records (doctor)",
    operation_id="create_access_request",
)
async def create_access_request(
    body: AccessRequestIn,
    services: Services = Depends(get_services),
    doctor: ResolvedIdentity = Depends(require_role("doctor")),
    idempotency_key: str | None = Header(default=None),
) -> dict[str, Any]:
    """Retrying with the same ``Idempotency-Key`` returns the original request."""
    created = await asyncio.to_thread(
        partial(
            services.grants.create,
            doctor.wallet_address or "",
            body.patient_wallet,
            body.record_ids,
            body.purpose,
            body.duration_days,
            urgency=body.urgency,
            idempotency_key=idempotency_key,
        )
    )
    return created.to_dict()


@router.get(
    "/access-requests",
    summary="List access requests for the caller",
    operation_id="list_access_requests",
)
async def list_access_requests(
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> dict[str, Any]:
    requests = await asyncio.to_thread(
        services.grants.list_for_wallet, identity.wallet_address or "", identity.role or ""
    )
    return {"access_requests": [r.to_dict() for r in requests]}


@router.post(
    "/access-requests/{request_id}/respond",
    summary="Approve or deny an access request (patient)",
    operation_id="respond_access_request",
)
async def respond_access_request(
    request_id: str,
    body: RespondIn,
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> dict[str, Any]:
    updated = await asyncio.to_thread(
        partial(
            services.grants.respond,
            request_id,
            identity.wallet_address or "",
            body.decision,
            denial_reason=body.denial_reason,
        )
    )
    return updated.to_dict()


@router.post(
    "/access-requests/{request_id}/revoke",
    summary="Revoke an approved access grant (patient)",
    operation_id="revoke_access_request",
)
async def revoke_access_request(
    request_id: str,
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> dict[str, Any]:
    updated = await asyncio.to_thread(
        services.grants.revoke, request_id, identity.wallet_address or ""
    )
    return updated.to_dict()
