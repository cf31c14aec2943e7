"""Pinata v3 Files API client with typed errors.

Holds the bearer JWT; only ever constructed server-side.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx

__all__ = ["PinataClient", "PinataError", "PinnedFile", "PinResult"]


class PinataError(Exception):
    """Raised when Pinata is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PinResult:
    file_id: str
    content_address: str
    size: int
    mime_type: str
    is_duplicate: bool


@dataclass(frozen=True)
class PinnedFile:
    file_id: str
    content_address: str
    name: str = ""


def _files(body: dict[str, Any]) -> list[dict[str, Any]]:
    data = body.get("data") or {}
    return list(data.get("files") or [])


class PinataClient:
    """HTTP client for pinning, lookup, unpinning and gateway reads."""

    def __init__(
        self,
        jwt: str,
        api_url: str = "https://api.pinata.cloud",
        uploads_url: str = "https://uploads.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._uploads_url = uploads_url.rstrip("/")
        self._gateway_url = gateway_url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {jwt}"},
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise PinataError(f"Pinata unreachable: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise PinataError(
                f"Pinata {method} {httpx.URL(url).path} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp

    async def upload(
        self,
        data: bytes,
        file_name: str,
        keyvalues: dict[str, str],
    ) -> PinResult:
        resp = await self._request(
            "POST",
            f"{self._uploads_url}/v3/files",
            files={"file": (file_name, data, "application/octet-stream")},
            data={
                "network": "public",
                "name": file_name,
                "keyvalues": json.dumps(keyvalues),
            },
        )
        body = resp.json().get("data") or {}
        if not body.get("cid"):
            raise PinataError("Pinata upload response has no cid")
        return PinResult(
            file_id=str(body.get("id", "")),
            content_address=body["cid"],
            size=int(body.get("size") or len(data)),
            mime_type=body.get("mime_type") or "application/octet-stream",
            is_duplicate=bool(body.get("is_duplicate", False)),
        )

    async def search(self, content_address: str) -> str | None:
        """Return the file id for a content address, if Pinata finds one."""
        resp = await self._request(
            "GET",
            f"{self._api_url}/v3/files/public",
            params={"cid": content_address},
        )
        for item in _files(resp.json()):
            if item.get("cid") == content_address and item.get("id"):
                return str(item["id"])
        return None

    async def list_files(self, limit: int) -> list[PinnedFile]:
        """Most recent pinned files, one page of at most *limit* entries."""
        resp = await self._request(
            "GET",
            f"{self._api_url}/v3/files/public",
            params={"limit": limit},
        )
        return [
            PinnedFile(
                file_id=str(item.get("id", "")),
                content_address=item.get("cid", ""),
                name=item.get("name", ""),
            )
            for item in _files(resp.json())
        ]

    async def remove(self, file_id: str) -> bool:
        """Delete a file by id. Returns False when Pinata no longer has it."""
        try:
            await self._request("DELETE", f"{self._api_url}/v3/files/public/{file_id}")
        except PinataError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def fetch(self, content_address: str) -> bytes:
        resp = await self._request("GET", f"{self._gateway_url}/ipfs/{content_address}")
        return resp.content

    async def test_authentication(self) -> bool:
        await self._request("GET", f"{self._api_url}/data/testAuthentication")
        return True

    async def close(self) -> None:
        await self._client.aclose()
