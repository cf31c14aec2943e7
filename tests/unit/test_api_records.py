"""Tests for the record endpoints: upload, list, content, delete."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from medvault.api.app import create_app
from medvault.api.deps import Services, build_services
from medvault.objectstore.adapter import ObjectStoreAdapter
from medvault.settings import Settings

from medvault_testkit import DOCTOR, PATIENT, FakePinata

PATIENT_HEADERS = {"x-wallet-address": PATIENT}
DOCTOR_HEADERS = {"x-wallet-address": DOCTOR}


@pytest.fixture(autouse=True)
def _registered(services: Services) -> None:
    services.users.register(PATIENT, "patient")
    services.users.register(DOCTOR, "doctor")


async def _upload(client: AsyncClient, content: bytes = b"%PDF-1.7 lab") -> dict[str, Any]:
    resp = await client.post(
        "/records",
        files={"file": ("panel.pdf", content, "application/pdf")},
        data={"title": "Blood panel", "record_type": "lab-result"},
        headers=PATIENT_HEADERS,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()  # type: ignore[no-any-return]


@pytest.mark.anyio()
async def test_upload_list_and_fetch(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        uploaded = await _upload(client)
        listed = await client.get("/records", headers=PATIENT_HEADERS)
        record_id = uploaded["record"]["id"]
        content = await client.get(f"/records/{record_id}/content", headers=PATIENT_HEADERS)

    assert uploaded["is_duplicate"] is False
    assert uploaded["record"]["title"] == "Blood panel"
    assert uploaded["record"]["record_type"] == "lab-result"
    assert [r["id"] for r in listed.json()["records"]] == [record_id]
    assert content.status_code == 200
    assert content.content == b"%PDF-1.7 lab"
    assert content.headers["content-type"] == "application/pdf"
    assert content.headers["cache-control"] == "no-store"
    assert 'filename="Blood panel"' in content.headers["content-disposition"]


@pytest.mark.anyio()
async def test_duplicate_upload_flagged(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await _upload(client)
        second = await _upload(client)

    assert second["is_duplicate"] is True
    assert first["record"]["id"] != second["record"]["id"]
    assert first["record"]["content_address"] == second["record"]["content_address"]


@pytest.mark.anyio()
async def test_doctor_cannot_upload(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/records",
            files={"file": ("x.pdf", b"x", "application/pdf")},
            headers=DOCTOR_HEADERS,
        )
    assert resp.status_code == 403


@pytest.mark.anyio()
async def test_empty_upload_rejected(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/records",
            files={"file": ("empty.pdf", b"", "application/pdf")},
            headers=PATIENT_HEADERS,
        )
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "UPLOAD_REJECTED"


@pytest.mark.anyio()
async def test_upload_without_credential_is_unavailable(test_settings: Settings) -> None:
    services = build_services(test_settings, object_store=ObjectStoreAdapter(None))
    services.users.register(PATIENT, "patient")
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/records",
            files={"file": ("x.pdf", b"x", "application/pdf")},
            headers=PATIENT_HEADERS,
        )
    assert resp.status_code == 503
    assert resp.json()["error_code"] == "UPLOAD_REJECTED"


@pytest.mark.anyio()
async def test_doctor_read_without_grant_denied(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        record_id = (await _upload(client))["record"]["id"]
        resp = await client.get(f"/records/{record_id}/content", headers=DOCTOR_HEADERS)
        metrics = await client.get("/metrics")

    assert resp.status_code == 403
    assert resp.json()["error_code"] == "FORBIDDEN"
    assert 'medvault_record_reads_total{result="deny"}' in metrics.text


@pytest.mark.anyio()
async def test_delete_is_retry_safe(app: FastAPI, fake_pinata: FakePinata) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        record_id = (await _upload(client))["record"]["id"]
        first = await client.delete(f"/records/{record_id}", headers=PATIENT_HEADERS)
        second = await client.delete(f"/records/{record_id}", headers=PATIENT_HEADERS)
        listed = await client.get("/records", headers=PATIENT_HEADERS)

    assert first.status_code == 200
    assert first.json()["still_referenced"] is False
    assert first.json()["already_absent"] is False
    assert first.json()["record"]["deleted_at"] is not None
    assert second.json()["already_absent"] is True
    assert listed.json()["records"] == []
    assert fake_pinata.files == {}


@pytest.mark.anyio()
async def test_delete_transport_failure(app: FastAPI, fake_pinata: FakePinata) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        record_id = (await _upload(client))["record"]["id"]
        fake_pinata.fail_deletes = True
        resp = await client.delete(f"/records/{record_id}", headers=PATIENT_HEADERS)

    assert resp.status_code == 502
    body = resp.json()
    assert body["error_code"] == "DELETE_FAILED"
    assert body["message"] == "Temporary storage or network problem, please try again"
