"""Authentication service: registration, login, access gate and profile updates.

Orchestrates the credential store, the sensitive-field repository and the
subscription lifecycle for one request.  Uses :class:`TokenManager` from
``security.py`` for access-token issuance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from identity_core.config import Settings
from identity_core.errors import DuplicateIdentity, InvalidCredentials, StaleWriteConflict
from identity_core.security.credentials import CredentialStore
from identity_core.security.field_codec import FieldCodec
from identity_core.state.repository import AccountRepository, InvoiceRepository
from identity_core.state.sensitive_fields import SensitiveFieldRepository
from identity_core.state.tables import AccountTable
from identity_core.subscription.lifecycle import SubscriptionLifecycle, initial_state
from sqlalchemy.ext.asyncio import AsyncSession

from api.security import TokenManager

logger = logging.getLogger(__name__)

# Profile columns a caller may change through :meth:`AuthService.update_profile`.
_PROFILE_FIELDS = frozenset({"name", "phone", "tax_id"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def invoice_to_dict(invoice: Any) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "external_payment_id": invoice.external_payment_id,
        "issued_at": invoice.issued_at,
        "amount": invoice.amount,
        "status": invoice.status,
        "payment_method": invoice.payment_method,
        "receipt_url": invoice.receipt_url,
    }


class AuthService:
    """High-level identity operations.

    Parameters
    ----------
    session:
        An async database session (caller manages transaction).
    codec:
        The process-wide field codec.
    settings:
        Identity settings (trial window, bcrypt cost, decrypt policy).
    token_manager:
        Signs access tokens returned by register and login.
    clock:
        Returns the current aware UTC time; injectable for tests.
    bcrypt_rounds:
        Overrides ``settings.bcrypt_rounds`` (tests use the minimum cost).
    """

    def __init__(
        self,
        session: AsyncSession,
        codec: FieldCodec,
        settings: Settings,
        token_manager: TokenManager,
        *,
        clock: Callable[[], datetime] = _utcnow,
        bcrypt_rounds: int | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tm = token_manager
        self._clock = clock
        self._accounts = AccountRepository(session)
        self._invoices = InvoiceRepository(session)
        self._fields = SensitiveFieldRepository.for_table(
            session, codec, "accounts", policy=settings.decrypt_failure_policy
        )
        self._credentials = CredentialStore(self._accounts, rounds=bcrypt_rounds or settings.bcrypt_rounds)
        self._lifecycle = SubscriptionLifecycle(self._accounts, self._invoices, settings, clock=clock)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        phone: str | None = None,
        tax_id: str | None = None,
        free: bool = False,
    ) -> dict[str, Any]:
        """Create an account and return its display view with an access token.

        Email, phone and tax ID uniqueness are checked up front (the latter
        two through their blind indexes); a race that slips past the checks
        is caught by the unique constraints and reported the same way.

        Raises
        ------
        DuplicateIdentity
            If the email, phone or tax ID is already registered.
        """
        if await self._accounts.get_by_email(email) is not None:
            raise DuplicateIdentity("email")
        await self._fields.ensure_unique("phone", phone)
        await self._fields.ensure_unique("tax_id", tax_id)

        now = self._clock()
        row = AccountTable(
            name=name.strip(),
            email=email,
            password_hash=self._credentials.hash_password(password),
            member_since=now,
            **initial_state(now, self._settings.trial_window, free=free),
            **self._fields.seal({"phone": phone, "tax_id": tax_id}),
        )
        account = await self._accounts.add(row)
        logger.info("Registered account %s (status=%s)", account.id, account.subscription_status)

        return {
            "account": await self.get_display_view(account),
            "access_token": self._tm.issue(account.id),
        }

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Validate credentials and return ``{account, migrated, access_token}``.

        A legacy plaintext password is migrated to bcrypt on success, and an
        expired trial is flipped to PENDING before the view is built.

        Raises
        ------
        InvalidCredentials
            For an unknown email and for a wrong password alike.
        """
        account = await self._accounts.get_by_email(email)
        if account is None:
            self._credentials.burn_cycle()
            raise InvalidCredentials()

        result = await self._credentials.verify(account, password)
        if not result.matched:
            logger.info("Failed login for account %s", account.id)
            raise InvalidCredentials()

        await self._accounts.record_login(account.id, self._clock())
        account = await self._lifecycle.enforce_trial_expiry(account)
        refreshed = await self._accounts.get_by_id(account.id)
        if refreshed is not None:
            account = refreshed

        return {
            "account": await self.get_display_view(account),
            "migrated": result.migrated,
            "access_token": self._tm.issue(account.id),
        }

    # ------------------------------------------------------------------
    # Access gate and display
    # ------------------------------------------------------------------

    async def authorize_access(self, account_id: str) -> AccountTable:
        """Load the authenticated account and enforce trial expiry.

        Raises :class:`InvalidCredentials` when the account no longer exists.
        """
        account = await self._accounts.get_by_id(account_id)
        if account is None:
            raise InvalidCredentials()
        return await self._lifecycle.enforce_trial_expiry(account)

    async def get_display_view(self, account: AccountTable) -> dict[str, Any]:
        """Decrypted account view with the invoice ledger.

        Never contains the password hash, blind-index columns or the row
        version.
        """
        view = self._fields.read_for_display(account)
        view["invoices"] = [invoice_to_dict(inv) for inv in await self._invoices.list_for_account(account.id)]
        return view

    # ------------------------------------------------------------------
    # Profile updates
    # ------------------------------------------------------------------

    async def update_profile(
        self,
        account_id: str,
        expected_version: int,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply profile *changes* if the account is still at *expected_version*.

        Sensitive fields are re-encrypted only when their plaintext actually
        changes.  Returns ``{account, version}`` where ``version`` is the new
        concurrency token.

        Raises
        ------
        StaleWriteConflict
            If the account changed since the caller read it.
        DuplicateIdentity
            If the new phone or tax ID belongs to another account.
        """
        unknown = set(changes) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported profile field(s): {', '.join(sorted(unknown))}")

        account = await self.authorize_access(account_id)
        if account.version != expected_version:
            raise StaleWriteConflict(account_id)

        for field in ("phone", "tax_id"):
            if field in changes:
                await self._fields.ensure_unique(field, changes[field], exclude_id=account.id)

        changed = await self._fields.write_many(account, changes)
        if changed:
            logger.info("Updated profile of account %s: %s", account.id, ", ".join(changed))
        return {"account": await self.get_display_view(account), "version": account.version}
