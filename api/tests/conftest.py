"""Shared fixtures for identity API tests.

Router tests drive the real application through ``httpx.ASGITransport`` with
the database, codec, settings and token dependencies overridden.  Each test
gets its own SQLite file so concurrent sessions behave like a real server.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from identity_core.config import Settings
from identity_core.security.field_codec import FieldCodec
from identity_core.state.database import create_tables
from identity_core.state.sqlite_adapter import get_local_engine
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings
from api.dependencies import (
    get_codec,
    get_db_session,
    get_identity_settings,
    get_settings,
    get_token_manager,
)
from api.main import create_app
from api.security import TokenManager

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_TOKEN_SECRET = "test-token-secret"
TEST_WEBHOOK_SECRET = "whsec-test"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = get_local_engine(tmp_path / "identity.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def identity_settings() -> Settings:
    return Settings(
        encryption_key=TEST_KEY,
        database_url="sqlite+aiosqlite:///:memory:",
        _env_file=None,
    )


@pytest.fixture
def api_settings() -> APISettings:
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        token_secret=SecretStr(TEST_TOKEN_SECRET),
        payment_webhook_secret=SecretStr(TEST_WEBHOOK_SECRET),
        _env_file=None,
    )


@pytest.fixture
def codec() -> FieldCodec:
    return FieldCodec(TEST_KEY)


@pytest.fixture
def token_manager() -> TokenManager:
    return TokenManager(TEST_TOKEN_SECRET, ttl_seconds=3600)


@pytest.fixture
def app(session_factory, identity_settings, api_settings, codec, token_manager):
    application = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[get_settings] = lambda: api_settings
    application.dependency_overrides[get_identity_settings] = lambda: identity_settings
    application.dependency_overrides[get_codec] = lambda: codec
    application.dependency_overrides[get_token_manager] = lambda: token_manager
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def register(client):
    """Register an account through the API and return the response JSON."""

    async def _register(
        email: str = "ana@example.com",
        password: str = "correct-horse",
        **extra: str,
    ) -> dict:
        body = {"name": "Ana", "email": email, "password": password, **extra}
        resp = await client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _register
