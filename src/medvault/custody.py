"""Record custody: who may upload, read and delete which record.

Ties the identity projection, the access-grant store and the object store
adapter together. Each operation takes the resolved identity of the caller;
role and ownership checks happen here, not in the HTTP layer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from medvault.errors import Forbidden, NotFound, Unauthenticated, ValidationError
from medvault.logging import mask_wallet
from medvault.models import RECORD_TYPES, Record
from medvault.objectstore.adapter import DeleteOutcome
from medvault.objectstore.metadata import UploadMetadata
from medvault.storage.event_store import emit_best_effort

if TYPE_CHECKING:
    from medvault.grants.store import AccessGrantStore
    from medvault.identity.resolver import ResolvedIdentity
    from medvault.objectstore.adapter import ObjectStoreAdapter
    from medvault.storage.event_store import LedgerProtocol
    from medvault.storage.records import RecordRepositoryProtocol

__all__ = ["CustodyService", "RecordContent"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordContent:
    record: Record
    data: bytes
    via_request_id: str | None = None


def _require_role(actor: ResolvedIdentity, *roles: str) -> str:
    if not actor.is_authenticated or not actor.wallet_address:
        raise Unauthenticated("sign in required")
    if actor.role not in roles:
        raise Forbidden(f"requires role {' or '.join(roles)}")
    return actor.wallet_address


class CustodyService:
    def __init__(
        self,
        records: RecordRepositoryProtocol,
        grants: AccessGrantStore,
        store: ObjectStoreAdapter,
        ledger: LedgerProtocol | None = None,
    ) -> None:
        self._records = records
        self._grants = grants
        self._store = store
        self._ledger = ledger

    async def upload_record(
        self,
        actor: ResolvedIdentity,
        data: bytes,
        file_name: str,
        *,
        title: str = "",
        file_type: str = "",
        record_type: str = "other",
        description: str = "",
        extensions: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> tuple[Record, bool]:
        """Pin *data* for the calling patient and register a new Record.

        Identical bytes yield the same content address; every upload still
        creates its own Record. Returns ``(record, is_duplicate)``.
        """
        owner = _require_role(actor, "patient")
        if record_type not in RECORD_TYPES:
            raise ValidationError(f"record_type must be one of {sorted(RECORD_TYPES)}")
        at = now or datetime.now(UTC)

        metadata = UploadMetadata(
            patient_address=owner,
            file_type=file_type,
            file_size=len(data),
            record_type=record_type,
            date_created=at.isoformat(),
            original_file_name=file_name,
            extensions=extensions or {},
        )
        result = await self._store.upload(data, file_name, metadata)

        record = Record(
            id=str(uuid.uuid4()),
            owner_wallet=owner,
            title=title.strip() or file_name,
            file_type=file_type or result.mime_type,
            content_address=result.content_address,
            size_bytes=len(data),
            uploaded_at=at,
            record_type=record_type,
            description=description,
        )
        await asyncio.to_thread(self._records.add, record)
        logger.info(
            "Record %s uploaded by %s (duplicate=%s)",
            record.id,
            mask_wallet(owner),
            result.is_duplicate,
        )
        emit_best_effort(
            self._ledger,
            record.id,
            "record_uploaded",
            {"content_address": record.content_address, "size_bytes": record.size_bytes},
            actor=owner,
        )
        return record, result.is_duplicate

    async def list_records(self, actor: ResolvedIdentity) -> list[Record]:
        owner = _require_role(actor, "patient")
        return await asyncio.to_thread(self._records.list_for_owner, owner)

    async def fetch_record(
        self,
        actor: ResolvedIdentity,
        record_id: str,
        *,
        request_id: str | None = None,
        now: datetime | None = None,
    ) -> RecordContent:
        """Return decrypted content for the owner or an authorized doctor.

        A doctor must name the access request that grants the read; the grant
        must be theirs, approved, unexpired and cover *record_id*.
        """
        wallet = _require_role(actor, "patient", "doctor")
        record = await asyncio.to_thread(self._records.get, record_id)
        if record is None or record.is_deleted:
            raise NotFound("record not found", details={"record_id": record_id})

        via: str | None = None
        if record.owner_wallet != wallet:
            if actor.role != "doctor" or not request_id:
                raise Forbidden("no access to this record")
            await self._check_grant(wallet, request_id, record_id, now)
            via = request_id

        data = await self._store.retrieve(record.content_address)
        emit_best_effort(
            self._ledger,
            record.id,
            "record_accessed",
            {"request_id": via, "owner_wallet": record.owner_wallet},
            actor=wallet,
        )
        return RecordContent(record=record, data=data, via_request_id=via)

    async def delete_record(
        self, actor: ResolvedIdentity, record_id: str
    ) -> tuple[Record, DeleteOutcome]:
        """Unpin the content and soft-delete the Record. Retry-safe.

        Content another live Record still points at stays pinned; only this
        Record is soft-deleted.
        """
        owner = _require_role(actor, "patient")
        record = await asyncio.to_thread(self._records.get, record_id)
        if record is None:
            raise NotFound("record not found", details={"record_id": record_id})
        if record.owner_wallet != owner:
            raise Forbidden("only the owner may delete this record")

        live = await asyncio.to_thread(
            self._records.count_live_by_content_address, record.content_address
        )
        others = live if record.is_deleted else live - 1
        if others > 0:
            logger.info(
                "Keeping %s pinned, %d other record(s) still reference it",
                record.content_address,
                others,
            )
            outcome = DeleteOutcome(
                record.content_address, None, already_absent=False, still_referenced=True
            )
        else:
            outcome = await self._store.delete(record.content_address)
        deleted = await asyncio.to_thread(self._records.mark_deleted, record_id)
        emit_best_effort(
            self._ledger,
            record_id,
            "record_deleted",
            {
                "content_address": record.content_address,
                "already_absent": outcome.already_absent,
                "still_referenced": outcome.still_referenced,
            },
            actor=owner,
        )
        return deleted or record, outcome

    async def _check_grant(
        self,
        doctor_wallet: str,
        request_id: str,
        record_id: str,
        now: datetime | None,
    ) -> None:
        try:
            grant = await asyncio.to_thread(self._grants.get, request_id, now)
        except NotFound as exc:
            raise Forbidden("no access to this record") from exc
        if grant.doctor_wallet != doctor_wallet:
            raise Forbidden("no access to this record")
        allowed = await asyncio.to_thread(self._grants.authorize, request_id, record_id, now)
        if not allowed:
            logger.info(
                "Denied read of %s by %s via %s (status=%s)",
                record_id,
                mask_wallet(doctor_wallet),
                request_id,
                grant.status,
            )
            raise Forbidden("access grant does not authorize this record")
