"""Tests for global API error handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from medvault.errors import UploadRejected

from medvault_testkit import DOCTOR


@pytest.mark.anyio()
async def test_validation_error_returns_machine_readable_payload(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/auth/session", json={})

    assert resp.status_code == 422
    body = resp.json()
    assert body["error_code"] == "VALIDATION_FAILED"
    assert body["message"] == "Request validation failed"
    assert body["request_id"]
    assert isinstance(body.get("details"), list)
    assert body["details"][0]["loc"] == ["body", "wallet_address"]
    assert resp.headers["x-correlation-id"] == body["request_id"]


@pytest.mark.anyio()
async def test_unknown_route_uses_not_found_code(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/does-not-exist")

    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "NOT_FOUND"
    assert body["request_id"]


@pytest.mark.anyio()
async def test_method_not_allowed_is_invalid_request(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.put("/health")

    assert resp.status_code == 405
    assert resp.json()["error_code"] == "INVALID_REQUEST"


@pytest.mark.anyio()
async def test_custody_error_maps_to_status_and_code(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/users/me", headers={"x-wallet-address": DOCTOR})

    assert resp.status_code == 401
    body = resp.json()
    assert body["error_code"] == "UNAUTHENTICATED"
    assert body["request_id"] == resp.headers["x-correlation-id"]


@pytest.mark.anyio()
async def test_retryable_error_hides_details(app: FastAPI) -> None:
    @app.get("/__upstream")
    async def upstream() -> dict[str, str]:
        raise UploadRejected("pinning failed", status_code=502, details={"upstream": "secret"})

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/__upstream")

    assert resp.status_code == 502
    body = resp.json()
    assert body["error_code"] == "UPLOAD_REJECTED"
    assert "details" not in body


@pytest.mark.anyio()
async def test_unhandled_exception_returns_internal_error_payload(app: FastAPI) -> None:
    @app.get("/__boom")
    async def boom() -> dict[str, str]:
        raise RuntimeError("boom")

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/__boom")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error_code"] == "INTERNAL_ERROR"
    assert body["message"] == "Internal server error"
    assert body["request_id"]
