"""Repository classes providing access to the identity state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Account mutations are never blind overwrites.  Every update is a conditional
``UPDATE ... WHERE`` that either matches the expected ``version`` or the
expected value of the specific field being changed, and reports whether it
won.  Reads use ``populate_existing`` so a re-read after a conditional update
always reflects the database rather than a stale identity-map entry.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.errors import DuplicateIdentity, StaleWriteConflict
from identity_core.state.tables import AccountTable, InvoiceTable

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    """Lower-case and trim an email so lookups are case-insensitive."""
    return email.strip().lower()


def _duplicate_field_from_error(exc: IntegrityError) -> str:
    """Best-effort mapping of a unique-constraint violation to the offending field."""
    message = str(exc.orig).lower()
    for marker, field in (
        ("tax_id_hash", "tax_id"),
        ("phone_hash", "phone"),
        ("email", "email"),
    ):
        if marker in message:
            return field
    return "identity"


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


async def conditional_update(
    session: AsyncSession,
    table: Any,
    entity_id: str,
    conditions: Iterable[Any],
    values: dict[str, Any],
) -> bool:
    """Apply *values* to one row only if every condition still holds.

    The row's ``version`` column is incremented in the same statement.
    Returns ``True`` when the row was updated, ``False`` when a concurrent
    writer got there first (or the row does not exist).
    """
    stmt = (
        update(table)
        .where(table.id == entity_id, *conditions)
        .values(**values, version=table.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.flush()
    return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# AccountRepository
# ---------------------------------------------------------------------------


class AccountRepository:
    """Reads and conditional writes for the ``accounts`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def add(self, row: AccountTable) -> AccountTable:
        """Insert a new account.

        Unique-constraint races (two registrations passing the pre-checks at
        the same time) surface as :class:`DuplicateIdentity`, never as a
        database error.  The transaction is rolled back in that case.
        """
        if not row.id:
            row.id = uuid.uuid4().hex
        row.email = normalize_email(row.email)
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            await self._session.rollback()
            raise DuplicateIdentity(_duplicate_field_from_error(exc)) from exc
        return row

    async def get_by_id(self, account_id: str) -> AccountTable | None:
        """Fetch an account by primary key, always reflecting the database."""
        stmt = select(AccountTable).where(AccountTable.id == account_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> AccountTable | None:
        """Fetch an account by email address (case-insensitive)."""
        stmt = (
            select(AccountTable)
            .where(AccountTable.email == normalize_email(email))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_status(self, status: str) -> list[AccountTable]:
        """Return every account in the given subscription status."""
        stmt = (
            select(AccountTable)
            .where(AccountTable.subscription_status == status)
            .order_by(AccountTable.member_since)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self) -> list[AccountTable]:
        stmt = select(AccountTable).order_by(AccountTable.member_since).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_versioned(self, account_id: str, expected_version: int, **values: Any) -> None:
        """Update an account only if its version is still *expected_version*.

        Raises :class:`StaleWriteConflict` when the version moved on.
        """
        won = await conditional_update(
            self._session,
            AccountTable,
            account_id,
            [AccountTable.version == expected_version],
            values,
        )
        if not won:
            logger.info("Versioned update lost race: account=%s expected_version=%d", account_id, expected_version)
            raise StaleWriteConflict(account_id)

    async def compare_and_set(self, account_id: str, column: str, expected: Any, **values: Any) -> bool:
        """Update an account only if *column* still holds *expected*."""
        attr = getattr(AccountTable, column)
        condition = attr.is_(None) if expected is None else attr == expected
        return await conditional_update(self._session, AccountTable, account_id, [condition], values)

    async def transition_status(
        self,
        account_id: str,
        *,
        allowed_from: Iterable[str],
        to_status: str,
        **values: Any,
    ) -> bool:
        """Move an account to *to_status* only if its current status is in *allowed_from*.

        The status check and the write are one statement, so two concurrent
        deliveries of the same event cannot both apply.
        """
        allowed = list(allowed_from)
        return await conditional_update(
            self._session,
            AccountTable,
            account_id,
            [AccountTable.subscription_status.in_(allowed)],
            {"subscription_status": to_status, **values},
        )

    async def record_login(self, account_id: str, at: datetime) -> None:
        """Stamp ``last_login_at`` without bumping the version.

        Login bookkeeping must never make a concurrent profile edit fail.
        """
        stmt = (
            update(AccountTable)
            .where(AccountTable.id == account_id)
            .values(last_login_at=at)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """Append-only access to the ``account_invoices`` ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def has_payment(self, account_id: str, external_payment_id: str) -> bool:
        """Return ``True`` if the payment reference is already in the ledger."""
        stmt = select(InvoiceTable.id).where(
            InvoiceTable.account_id == account_id,
            InvoiceTable.external_payment_id == external_payment_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def append(
        self,
        account_id: str,
        external_payment_id: str,
        *,
        amount: Decimal,
        issued_at: datetime,
        status: str = "PAID",
        payment_method: str | None = None,
        receipt_url: str | None = None,
    ) -> bool:
        """Append an invoice; returns ``False`` if the payment was already recorded."""
        result = await _dialect_insert_nothing(
            self._session,
            InvoiceTable,
            values={
                "id": uuid.uuid4().hex,
                "account_id": account_id,
                "external_payment_id": external_payment_id,
                "issued_at": issued_at,
                "amount": amount,
                "status": status,
                "payment_method": payment_method,
                "receipt_url": receipt_url,
            },
            index_elements=["account_id", "external_payment_id"],
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_for_account(self, account_id: str) -> list[InvoiceTable]:
        """Return the account's ledger in issue order."""
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.account_id == account_id)
            .order_by(InvoiceTable.issued_at, InvoiceTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
