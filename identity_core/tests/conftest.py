"""Shared fixtures for identity core tests.

Every test runs against a fresh in-memory SQLite database via aiosqlite so
the suite needs no PostgreSQL instance.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from identity_core.config import Settings
from identity_core.security.credentials import CredentialStore
from identity_core.security.field_codec import FieldCodec
from identity_core.state.repository import AccountRepository, InvoiceRepository
from identity_core.state.sensitive_fields import SensitiveFieldRepository
from identity_core.state.sqlite_adapter import get_local_engine
from identity_core.state.tables import AccountTable, Base
from identity_core.subscription.lifecycle import SubscriptionLifecycle
from sqlalchemy.ext.asyncio import async_sessionmaker

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
T0 = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


class FakeClock:
    """Mutable clock injected into the lifecycle."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine():
    engine = get_local_engine(":memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(encryption_key=TEST_KEY, database_url="sqlite+aiosqlite:///:memory:", _env_file=None)


@pytest.fixture
def codec() -> FieldCodec:
    return FieldCodec(TEST_KEY)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accounts(session) -> AccountRepository:
    return AccountRepository(session)


@pytest.fixture
def invoices(session) -> InvoiceRepository:
    return InvoiceRepository(session)


@pytest.fixture
def credentials(accounts) -> CredentialStore:
    # Minimum bcrypt cost keeps the suite fast.
    return CredentialStore(accounts, rounds=4)


@pytest.fixture
def account_fields(session, codec) -> SensitiveFieldRepository:
    return SensitiveFieldRepository.for_table(session, codec, "accounts")


@pytest.fixture
def lifecycle(accounts, invoices, settings, clock) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(accounts, invoices, settings, clock=clock)


@pytest.fixture
def make_account(accounts, account_fields):
    """Factory inserting an account row with sealed sensitive fields."""

    async def _make(
        email: str = "ana@example.com",
        *,
        password_hash: str = "plain-secret",
        status: str = "TRIAL",
        member_since: datetime = T0,
        trial_ends_at: datetime | None = T0 + timedelta(days=2),
        **fields: object,
    ) -> AccountTable:
        values = account_fields.seal(dict(fields))
        row = AccountTable(
            name=str(values.pop("name", "Ana")),
            email=email,
            password_hash=password_hash,
            subscription_status=status,
            member_since=member_since,
            trial_ends_at=trial_ends_at,
            **values,
        )
        return await accounts.add(row)

    return _make
