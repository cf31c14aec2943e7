"""Shared fixtures for medvault tests."""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from medvault.api.app import create_app
from medvault.api.deps import Services, build_services
from medvault.grants.idempotency import InMemoryIdempotencyStore
from medvault.grants.store import AccessGrantStore
from medvault.objectstore.adapter import ObjectStoreAdapter
from medvault.objectstore.pinata import PinataClient
from medvault.settings import Settings
from medvault.storage.access_requests import InMemoryAccessRequestRepository
from medvault.storage.event_store import InMemoryLedger
from medvault.storage.records import InMemoryRecordRepository

from medvault_testkit import FakePinata


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def fake_pinata() -> FakePinata:
    return FakePinata()


@pytest.fixture()
def pinata_client(fake_pinata: FakePinata) -> PinataClient:
    return PinataClient(
        "test-jwt",
        api_url="https://api.test",
        uploads_url="https://uploads.test",
        gateway_url="https://gateway.test",
        transport=httpx.MockTransport(fake_pinata.handler),
    )


@pytest.fixture()
def object_store(pinata_client: PinataClient) -> ObjectStoreAdapter:
    return ObjectStoreAdapter(pinata_client)


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        environment="dev",
        pinata_jwt="test-jwt",
        pg_dsn="",
        redis_url="",
        log_json=False,
    )


@pytest.fixture()
def record_repo() -> InMemoryRecordRepository:
    return InMemoryRecordRepository()


@pytest.fixture()
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture()
def grant_store(record_repo: InMemoryRecordRepository, ledger: InMemoryLedger) -> AccessGrantStore:
    return AccessGrantStore(
        record_repo,
        InMemoryAccessRequestRepository(),
        ledger=ledger,
        idempotency=InMemoryIdempotencyStore(),
    )


@pytest.fixture()
def services(test_settings: Settings, object_store: ObjectStoreAdapter) -> Services:
    return build_services(test_settings, object_store=object_store)


@pytest.fixture()
def app(services: Services) -> FastAPI:
    return create_app(services)
