"""Object store adapter: pin, fetch and unpin record content.

Every backend failure is classified here; callers only ever see
:mod:`medvault.errors` types.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from medvault.crypto import CipherError, PassthroughCipher, cipher_from_hex
from medvault.errors import DeleteFailed, NotFound, RetrieveFailed, UploadRejected, ValidationError
from medvault.objectstore.handles import ephemeral_handle
from medvault.objectstore.pinata import PinataClient, PinataError
from medvault.settings import MAX_DELETE_SCAN_PAGE, MAX_UPLOAD_BYTES

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from medvault.crypto import Cipher
    from medvault.objectstore.handles import EphemeralHandle
    from medvault.objectstore.metadata import UploadMetadata
    from medvault.objectstore.pinata import PinnedFile, PinResult
    from medvault.settings import Settings

__all__ = ["DeleteOutcome", "ObjectStoreAdapter", "PinningBackend", "UploadResult"]

logger = logging.getLogger(__name__)


class PinningBackend(Protocol):
    async def upload(self, data: bytes, file_name: str, keyvalues: dict[str, str]) -> PinResult:
        ...

    async def search(self, content_address: str) -> str | None:
        ...

    async def list_files(self, limit: int) -> list[PinnedFile]:
        ...

    async def remove(self, file_id: str) -> bool:
        ...

    async def fetch(self, content_address: str) -> bytes:
        ...


@dataclass(frozen=True)
class UploadResult:
    content_address: str
    size: int
    mime_type: str
    is_duplicate: bool


@dataclass(frozen=True)
class DeleteOutcome:
    content_address: str
    file_id: str | None
    already_absent: bool
    still_referenced: bool = False


class ObjectStoreAdapter:
    """Content-addressed storage with a server-held credential.

    ``backend=None`` means the credential is not configured: uploads are
    rejected and reads and deletes fail as infrastructure faults.
    """

    def __init__(
        self,
        backend: PinningBackend | None,
        cipher: Cipher | None = None,
        *,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        scan_page_size: int = 100,
    ) -> None:
        self._backend = backend
        self._cipher = cipher or PassthroughCipher()
        self._max_upload_bytes = max_upload_bytes
        self._scan_page_size = max(1, min(scan_page_size, MAX_DELETE_SCAN_PAGE))

    @classmethod
    def from_settings(cls, settings: Settings) -> ObjectStoreAdapter:
        backend = None
        if settings.pinata_jwt:
            backend = PinataClient(
                settings.pinata_jwt,
                api_url=settings.pinata_api_url,
                uploads_url=settings.pinata_uploads_url,
                gateway_url=settings.pinata_gateway_url,
                timeout=settings.object_store_timeout,
            )
        else:
            logger.warning("MEDVAULT_PINATA_JWT is not set, uploads will be rejected")
        return cls(
            backend,
            cipher_from_hex(settings.encryption_key),
            max_upload_bytes=settings.max_upload_bytes,
            scan_page_size=settings.delete_scan_page_size,
        )

    @property
    def configured(self) -> bool:
        return self._backend is not None

    @property
    def scan_page_size(self) -> int:
        return self._scan_page_size

    @property
    def backend(self) -> PinningBackend | None:
        return self._backend

    async def close(self) -> None:
        if isinstance(self._backend, PinataClient):
            await self._backend.close()

    async def upload(
        self,
        data: bytes,
        file_name: str,
        metadata: UploadMetadata,
    ) -> UploadResult:
        if self._backend is None:
            raise UploadRejected(
                "Record storage is not configured on the server",
                status_code=503,
                retryable=False,
            )
        if not data:
            raise UploadRejected("File is empty", status_code=422, retryable=False)
        if len(data) > self._max_upload_bytes:
            raise UploadRejected(
                "File exceeds the maximum upload size",
                status_code=413,
                retryable=False,
                details={"max_bytes": self._max_upload_bytes, "size": len(data)},
            )
        if not file_name:
            raise ValidationError("file_name is required")

        keyvalues = metadata.to_keyvalues()
        if self._cipher.name != "none":
            keyvalues["encrypted"] = "true"
            keyvalues["encryptionMethod"] = self._cipher.name

        try:
            pinned = await self._backend.upload(self._cipher.encrypt(data), file_name, keyvalues)
        except PinataError as exc:
            logger.error("Upload of %s failed: %s", file_name, exc)
            raise UploadRejected(f"pinning failed: {exc}") from exc

        logger.info(
            "Pinned %s (%d bytes, duplicate=%s)",
            pinned.content_address,
            pinned.size,
            pinned.is_duplicate,
        )
        return UploadResult(
            content_address=pinned.content_address,
            size=pinned.size,
            mime_type=pinned.mime_type,
            is_duplicate=pinned.is_duplicate,
        )

    async def retrieve(self, content_address: str) -> bytes:
        if not content_address:
            raise ValidationError("content_address is required")
        if self._backend is None:
            raise RetrieveFailed("object store is not configured")
        try:
            payload = await self._backend.fetch(content_address)
        except PinataError as exc:
            if exc.status_code == 404:
                raise NotFound("record content not found") from exc
            raise RetrieveFailed(f"gateway fetch failed: {exc}") from exc
        try:
            return self._cipher.decrypt(payload)
        except CipherError as exc:
            logger.error("Decrypting %s failed: %s", content_address, exc)
            raise RetrieveFailed("stored content could not be decrypted") from exc

    @asynccontextmanager
    async def open_record(
        self, content_address: str, suffix: str = ""
    ) -> AsyncIterator[EphemeralHandle]:
        """Yield a local handle on decrypted content, removed on exit."""
        data = await self.retrieve(content_address)
        async with ephemeral_handle(data, suffix=suffix) as handle:
            yield handle

    async def delete(self, content_address: str) -> DeleteOutcome:
        """Unpin content. Content the store no longer has counts as deleted."""
        if not content_address:
            raise ValidationError("content_address is required")
        if self._backend is None:
            raise DeleteFailed("object store is not configured")

        backend = self._backend
        file_id = await self._locate(backend, content_address)
        if file_id is None:
            logger.info("No pinned entry for %s, treating as already deleted", content_address)
            return DeleteOutcome(content_address, None, already_absent=True)

        try:
            removed = await backend.remove(file_id)
        except PinataError as exc:
            logger.error("Unpinning %s failed: %s", content_address, exc)
            raise DeleteFailed(f"unpin failed: {exc}") from exc

        if not removed:
            logger.info("Entry %s for %s was already gone", file_id, content_address)
        return DeleteOutcome(content_address, file_id, already_absent=not removed)

    async def _locate(self, backend: PinningBackend, content_address: str) -> str | None:
        try:
            file_id = await backend.search(content_address)
        except PinataError as exc:
            logger.warning("Search for %s failed, scanning instead: %s", content_address, exc)
        else:
            if file_id:
                return file_id

        try:
            files = await backend.list_files(self._scan_page_size)
        except PinataError as exc:
            logger.warning("Listing pinned files failed: %s", exc)
            return None
        for entry in files[: self._scan_page_size]:
            if entry.content_address == content_address:
                return entry.file_id
        return None
