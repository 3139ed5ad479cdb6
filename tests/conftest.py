"""
Shared Test Fixtures
====================

- SQLite (aiosqlite) database per test, schema from model metadata
- In-memory Redis double installed as the cache client
- A tenant app with App Store and Play Store credentials
- ``httpx.AsyncClient`` bound to the ASGI app
- A verifyReceipt double served through ``httpx.MockTransport``
"""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "test-admin-password")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import base64
import json

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from openrevenue.config import settings
from openrevenue.db import session as db_session_module
from openrevenue.services import cache as cache_module
from openrevenue.services.tenants import Tenant, TenantService

from factories import BUNDLE_ID, SHARED_SECRET, FakeAppStore, FakeRedis


# ---------------------------------------------------------------------------
# Redis double
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(cache_module, "_redis_client", fake)
    return fake


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'openrevenue.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    db_session_module.configure_engine(engine)
    await db_session_module.create_all()
    yield engine
    await engine.dispose()
    db_session_module.configure_engine(None)


@pytest_asyncio.fixture
async def db_session(engine):
    factory = db_session_module.get_session_factory()
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def session_factory(engine):
    return db_session_module.get_session_factory()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[str, str]:
    """(private PEM, public PEM) for service-account signing."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def service_account(rsa_keypair) -> dict[str, str]:
    private_pem, _ = rsa_keypair
    return {
        "type": "service_account",
        "client_email": "verifier@example-project.iam.gserviceaccount.com",
        "private_key_id": "test-key-id",
        "private_key": private_pem,
        "token_uri": "https://oauth2.example.test/token",
    }


@pytest_asyncio.fixture
async def tenant_app(db_session, service_account):
    app = await TenantService(db_session).create_app(
        name="Example App",
        app_store_shared_secret=SHARED_SECRET,
        app_store_bundle_id=BUNDLE_ID,
        play_store_service_account_json=json.dumps(service_account),
        play_store_package_name=BUNDLE_ID,
    )
    await db_session.commit()
    return app


@pytest.fixture
def tenant(tenant_app) -> Tenant:
    return Tenant(app_id=tenant_app.app_id, name=tenant_app.name)


@pytest.fixture
def api_headers(tenant_app) -> dict[str, str]:
    return {"Authorization": f"Bearer {tenant_app.api_key}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    token = base64.b64encode(
        f"{settings.ADMIN_USERNAME}:{settings.ADMIN_PASSWORD}".encode()
    ).decode()
    return {"Authorization": f"Basic {token}"}


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

@pytest.fixture
def app_store() -> FakeAppStore:
    return FakeAppStore()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(engine, app_store):
    from openrevenue.dependencies import get_store_verifier
    from openrevenue.main import app
    from openrevenue.services.store_verifier import StoreVerifier

    store_client = httpx.AsyncClient(transport=httpx.MockTransport(app_store.handler))
    app.dependency_overrides[get_store_verifier] = lambda: StoreVerifier(client=store_client)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await store_client.aclose()
