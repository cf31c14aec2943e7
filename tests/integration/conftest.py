"""Shared fixtures for integration tests.

These tests drive the real FastAPI app end to end:
    register → sign in → upload → request → approve → read → revoke → delete

No mocks on internal components. The pinning service is replaced by the
in-process FakePinata double and payloads are AES-GCM encrypted, so the
stored bytes never equal what the patient uploaded.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from medvault.api.app import create_app
from medvault.api.deps import Services, build_services
from medvault.crypto import cipher_from_hex
from medvault.objectstore.adapter import ObjectStoreAdapter
from medvault.objectstore.pinata import PinataClient
from medvault.settings import Settings

ENCRYPTION_KEY = "11" * 32


@pytest.fixture()
def integration_settings() -> Settings:
    """In-memory stores, encrypted payloads, no external services."""
    return Settings(
        environment="dev",
        pinata_jwt="integration-jwt",
        encryption_key=ENCRYPTION_KEY,
        pg_dsn="",
        redis_url="",
        log_json=False,
    )


@pytest.fixture()
def integration_services(integration_settings: Settings, pinata_client: PinataClient) -> Services:
    store = ObjectStoreAdapter(pinata_client, cipher_from_hex(ENCRYPTION_KEY))
    return build_services(integration_settings, object_store=store)


@pytest.fixture()
async def client(integration_services: Services) -> AsyncIterator[AsyncClient]:
    """Full ASGI client against the real FastAPI app."""
    app = create_app(integration_services)
    transport = ASGITransport(app=app)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
