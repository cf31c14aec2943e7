"""Record upload, listing, content fetch and deletion."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status

from medvault.api.deps import ResolvedIdentity, Services, get_services, require_identity
from medvault.api.routes import health
from medvault.errors import CustodyError, Forbidden

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)


def _count_store_error(exc: CustodyError) -> None:
    if exc.retryable or exc.status_code >= 500:
        health.record_object_store_error(exc.error_code)


@router.post(
    "/records",
    status_code=status.HTTP_201_CREATED,
    summary="Upload a record (patient)",
    operation_id="upload_record",
)
async def upload_record(
    file: UploadFile = File(...),
    title: str = Form(default=""),
    record_type: str = Form(default="other"),
    description: str = Form(default=""),
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> dict[str, Any]:
    data = await file.read()
    try:
        record, is_duplicate = await services.custody.upload_record(
            identity,
            data,
            file.filename or "upload",
            title=title,
            file_type=file.content_type or "",
            record_type=record_type,
            description=description,
        )
    except CustodyError as exc:
        _count_store_error(exc)
        raise
    return {"record": record.to_dict(), "is_duplicate": is_duplicate}


@router.get("/records", summary="List own records", operation_id="list_records")
async def list_records(
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> dict[str, Any]:
    records = await services.custody.list_records(identity)
    return {"records": [r.to_dict() for r in records]}


@router.get(
    "/records/{record_id}/content",
    summary="Fetch decrypted record content",
    operation_id="fetch_record",
)
async def fetch_record(
    record_id: str,
    request_id: str | None = None,
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> Response:
    """Owner, or a doctor naming an approved unexpired grant for this record."""
    try:
        content = await services.custody.fetch_record(identity, record_id, request_id=request_id)
    except Forbidden:
        health.record_read_decision(False)
        raise
    except CustodyError as exc:
        _count_store_error(exc)
        raise
    health.record_read_decision(True)
    record = content.record
    filename = record.title.encode("ascii", "ignore").decode().replace('"', "") or record.id
    return Response(
        content=content.data,
        media_type=record.file_type or "application/octet-stream",
        headers={
            "content-disposition": f'inline; filename="{filename}"',
            "cache-control": "no-store",
        },
    )


@router.delete(
    "/records/{record_id}",
    summary="Unpin and soft-delete a record (owner)",
    operation_id="delete_record",
)
async def delete_record(
    record_id: str,
    services: Services = Depends(get_services),
    identity: ResolvedIdentity = Depends(require_identity),
) -> dict[str, Any]:
    try:
        record, outcome = await services.custody.delete_record(identity, record_id)
    except CustodyError as exc:
        _count_store_error(exc)
        raise
    return {
        "record": record.to_dict(),
        "already_absent": outcome.already_absent,
        "still_referenced": outcome.still_referenced,
    }
