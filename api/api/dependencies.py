"""FastAPI dependency injection for settings, sessions, the field codec and the caller's account."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from identity_core.config import Settings, load_settings
from identity_core.security.field_codec import FieldCodec
from identity_core.state.database import get_engine
from identity_core.state.tables import AccountTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.security import TokenManager

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_identity_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_identity_settings() -> Settings:
    """Return the cached identity-core :class:`Settings` singleton."""
    global _identity_settings_cache  # noqa: PLW0603
    if _identity_settings_cache is None:
        _identity_settings_cache = load_settings()
    return _identity_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
IdentitySettingsDep = Annotated[Settings, Depends(get_identity_settings)]

# ---------------------------------------------------------------------------
# Field codec and token manager (process-wide, immutable after startup)
# ---------------------------------------------------------------------------

_codec: FieldCodec | None = None
_token_manager: TokenManager | None = None


def init_codec(settings: Settings) -> FieldCodec:
    """Build the process-wide codec; a missing or malformed key raises ``ConfigurationError``."""
    global _codec  # noqa: PLW0603
    _codec = FieldCodec.from_settings(settings)
    return _codec


def get_codec() -> FieldCodec:
    if _codec is None:
        raise RuntimeError("Field codec has not been initialised. Ensure init_codec() is called during startup.")
    return _codec


def get_token_manager(settings: SettingsDep) -> TokenManager:
    global _token_manager  # noqa: PLW0603
    if _token_manager is None:
        _token_manager = TokenManager(
            settings.token_secret.get_secret_value(),
            ttl_seconds=settings.token_ttl_seconds,
        )
    return _token_manager


CodecDep = Annotated[FieldCodec, Depends(get_codec)]
TokenManagerDep = Annotated[TokenManager, Depends(get_token_manager)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    session = _session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Authenticated account
# ---------------------------------------------------------------------------


def get_account_id(request: Request, token_manager: TokenManagerDep) -> str:
    """Validate the ``Authorization: Bearer`` token and return its subject."""
    auth_header = request.headers.get("authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = auth_header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Authorization header must use Bearer scheme")

    try:
        claims = token_manager.validate(parts[1])
    except PermissionError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}") from exc

    request.state.account_id = claims.sub
    return claims.sub


AccountIdDep = Annotated[str, Depends(get_account_id)]


async def get_current_account(
    account_id: AccountIdDep,
    session: SessionDep,
    codec: CodecDep,
    identity_settings: IdentitySettingsDep,
    token_manager: TokenManagerDep,
) -> AccountTable:
    """Load the caller's account, enforcing trial expiry on every access."""
    from identity_core.errors import InvalidCredentials

    from api.services.auth_service import AuthService

    svc = AuthService(session, codec, identity_settings, token_manager)
    try:
        return await svc.authorize_access(account_id)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail="Authentication required") from exc


CurrentAccountDep = Annotated[AccountTable, Depends(get_current_account)]
