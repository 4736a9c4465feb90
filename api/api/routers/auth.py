"""Authentication endpoints: register, login, current account and profile updates.

Public endpoints (register, login) issue an access token in the response
body.  ``/auth/me`` requires ``Authorization: Bearer <token>``.

The current row version is exposed as the ``ETag`` of ``GET /auth/me``;
``PATCH /auth/me`` requires it back via ``If-Match`` (or the
``expected_version`` body field) so concurrent edits cannot silently
overwrite each other.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Response

from api.dependencies import (
    AccountIdDep,
    CodecDep,
    CurrentAccountDep,
    IdentitySettingsDep,
    SessionDep,
    TokenManagerDep,
)
from api.schemas import (
    AccountView,
    LoginRequest,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    RegisterRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _etag(version: int) -> str:
    return f'"{version}"'


def _parse_if_match(value: str | None) -> int | None:
    """Extract the row version from an ``If-Match`` header value."""
    if value is None:
        return None
    raw = value.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    raw = raw.strip('"')
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="If-Match must carry an account version") from exc


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/register", status_code=201, response_model=TokenResponse)
async def register(
    body: RegisterRequest,
    session: SessionDep,
    codec: CodecDep,
    identity_settings: IdentitySettingsDep,
    token_manager: TokenManagerDep,
) -> dict[str, Any]:
    """Create an account in TRIAL and return an access token."""
    from identity_core.errors import DuplicateIdentity

    from api.services.auth_service import AuthService

    svc = AuthService(session, codec, identity_settings, token_manager)
    try:
        result = await svc.register(
            body.name,
            body.email,
            body.password,
            phone=body.phone,
            tax_id=body.tax_id,
        )
    except DuplicateIdentity as exc:
        raise HTTPException(status_code=409, detail=f"{exc.field} is already registered") from exc

    return {"access_token": result["access_token"], "account": result["account"]}


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    session: SessionDep,
    codec: CodecDep,
    identity_settings: IdentitySettingsDep,
    token_manager: TokenManagerDep,
) -> dict[str, Any]:
    """Authenticate with email and password.

    Unknown emails and wrong passwords produce the same 401 response.
    """
    from identity_core.errors import InvalidCredentials

    from api.services.auth_service import AuthService

    svc = AuthService(session, codec, identity_settings, token_manager)
    try:
        result = await svc.login(body.email, body.password)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail="Invalid email or password") from exc

    if result["migrated"]:
        logger.info("Legacy password upgraded during login for account %s", result["account"]["id"])
    return {"access_token": result["access_token"], "account": result["account"]}


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/me", response_model=AccountView)
async def me(
    account: CurrentAccountDep,
    response: Response,
    session: SessionDep,
    codec: CodecDep,
    identity_settings: IdentitySettingsDep,
    token_manager: TokenManagerDep,
) -> dict[str, Any]:
    """Return the caller's decrypted account view."""
    from api.services.auth_service import AuthService

    svc = AuthService(session, codec, identity_settings, token_manager)
    view = await svc.get_display_view(account)
    response.headers["ETag"] = _etag(account.version)
    return view


@router.patch("/me", response_model=ProfileUpdateResponse)
async def update_me(
    body: ProfileUpdateRequest,
    account_id: AccountIdDep,
    response: Response,
    session: SessionDep,
    codec: CodecDep,
    identity_settings: IdentitySettingsDep,
    token_manager: TokenManagerDep,
    if_match: str | None = Header(default=None),
) -> dict[str, Any]:
    """Update name, phone or tax ID, guarded by the account version."""
    from identity_core.errors import DuplicateIdentity, InvalidCredentials, StaleWriteConflict

    from api.services.auth_service import AuthService

    expected_version = _parse_if_match(if_match)
    if expected_version is None:
        expected_version = body.expected_version
    if expected_version is None:
        raise HTTPException(status_code=428, detail="If-Match header or expected_version is required")

    changes = body.model_dump(exclude_unset=True, exclude={"expected_version"})
    if "name" in changes and changes["name"] is None:
        raise HTTPException(status_code=400, detail="name cannot be cleared")

    svc = AuthService(session, codec, identity_settings, token_manager)
    try:
        result = await svc.update_profile(account_id, expected_version, changes)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail="Authentication required") from exc
    except StaleWriteConflict as exc:
        raise HTTPException(status_code=412, detail="Account was modified; reload and retry") from exc
    except DuplicateIdentity as exc:
        raise HTTPException(status_code=409, detail=f"{exc.field} is already registered") from exc

    response.headers["ETag"] = _etag(result["version"])
    return result
