"""
Pytest configuration and fixtures for filevault tests.

Tests run against an in-memory SQLite database (aiosqlite) and the local
KMS provider, so no PostgreSQL or AWS account is needed.
"""
import base64
import os
import uuid
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set required environment variables before importing Settings to avoid validation error
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only-not-for-production")
os.environ.setdefault("DATABASE_PASSWORD", "password")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DB_SCHEMA"] = "vault_test"  # MUST be set before app imports
os.environ["KMS_PROVIDER"] = "local"

from filevault.database import Base, get_db, DB_SCHEMA
from filevault.main import app, init_key_services
from filevault.models.user import User
from filevault.models.stored_file import StoredFile
from filevault.services import envelope_store
from filevault.services.envelope_engine import EnvelopeEngine
from filevault.services.key_registry import KeyRegistry
from filevault.services.key_rotation import KeyRotationService
from filevault.services.kms.local_kms import LocalKMSProvider
from filevault.services.sharing import SharingService
from filevault.utils.jwt import create_access_token
import filevault.models  # noqa: F401

TEST_MASTER_KEY = "test-master-key-for-local-kms-provider"


@pytest.fixture
async def db_engine():
    """
    Fresh in-memory database per test.

    SQLite has no schemas, so the service schema is translated away, and
    foreign keys are switched on so ON DELETE CASCADE / RESTRICT behave
    like PostgreSQL.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    ).execution_options(schema_translate_map={DB_SCHEMA: None})

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the per-test database."""
    Session = async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)
    async with Session() as session:
        yield session


@pytest.fixture
def kms() -> LocalKMSProvider:
    return LocalKMSProvider(master_key=TEST_MASTER_KEY)


@pytest.fixture
def registry(kms) -> KeyRegistry:
    return KeyRegistry(kms, deletion_grace_days=7)


@pytest.fixture
def engine(kms, registry) -> EnvelopeEngine:
    return EnvelopeEngine(kms, registry)


@pytest.fixture
def sharing(engine, registry) -> SharingService:
    return SharingService(engine, registry)


@pytest.fixture
def rotation(engine, registry) -> KeyRotationService:
    return KeyRotationService(engine, registry)


async def make_user(db: AsyncSession, email: str) -> User:
    user = User(email=email)
    db.add(user)
    await db.commit()
    return user


async def make_file(db: AsyncSession, owner: User, name: str = "report.pdf") -> StoredFile:
    stored_file = StoredFile(
        owner_id=owner.id,
        name=name,
        storage_path=f"uploads/{owner.id}/{uuid.uuid4()}",
        mime_type="application/pdf",
        size=1024,
    )
    db.add(stored_file)
    await db.commit()
    return stored_file


async def make_encrypted_file(
    db: AsyncSession,
    engine: EnvelopeEngine,
    owner: User,
    dek: bytes,
    name: str = "report.pdf",
) -> StoredFile:
    """Upload flow: wrap the DEK under the owner's primary key and store the envelope."""
    stored_file = await make_file(db, owner, name)
    wrapped = await engine.wrap_for_owner(db, owner.id, dek)
    await envelope_store.create_envelope(
        db, stored_file.id, wrapped.kek_id, wrapped.ciphertext, os.urandom(12)
    )
    await db.commit()
    return stored_file


@pytest.fixture
async def alice(db_session) -> User:
    return await make_user(db_session, "alice@example.com")


@pytest.fixture
async def bob(db_session) -> User:
    return await make_user(db_session, "bob@example.com")


@pytest.fixture
async def carol(db_session) -> User:
    return await make_user(db_session, "carol@example.com")


@pytest.fixture
async def client(db_session: AsyncSession, kms) -> AsyncGenerator[AsyncClient, None]:
    """
    Async test client for the FastAPI application.
    Overrides the database dependency and installs the key services on app.state.
    """
    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    init_key_services(app, kms)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.kms_provider = None


def auth_headers(user: User) -> dict:
    """Authorization header carrying a valid access token for user."""
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


async def api_create_key(client: AsyncClient, headers: dict, alias: str, is_primary: bool = True) -> dict:
    """Create a KEK through the API."""
    response = await client.post(
        "/api/v1/keys",
        json={"alias": alias, "is_primary": is_primary},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


async def api_upload_file(client: AsyncClient, headers: dict, dek: bytes, name: str = "report.pdf") -> dict:
    """Upload flow through the API: wrap the DEK, then register the file with its envelope."""
    wrap = await client.post("/api/v1/keys/wrap", json={"dek": b64(dek)}, headers=headers)
    assert wrap.status_code == 200, wrap.text
    wrapped = wrap.json()

    response = await client.post(
        "/api/v1/files",
        json={
            "name": name,
            "storage_path": f"uploads/{uuid.uuid4()}",
            "mime_type": "application/pdf",
            "size": 2048,
            "encrypted_dek": wrapped["encrypted_dek"],
            "kek_id": wrapped["kek_id"],
            "iv": b64(os.urandom(12)),
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()
