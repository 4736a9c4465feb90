"""SQLAlchemy 2.0 ORM table definitions for the identity state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.

Sensitive columns (``phone``, ``tax_id``) hold ``hex(iv):hex(ciphertext)``
strings and are paired with a ``*_hash`` blind-index column.  Blind indexes
are the only columns ever queried for those values.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that also comes back aware from SQLite.

    PostgreSQL returns aware values for ``TIMESTAMP WITH TIME ZONE``; SQLite
    drops the offset, so naive results are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all identity tables."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountTable(Base):
    """Human user accounts with credentials, encrypted contact data, and billing state.

    ``password_hash`` normally holds a bcrypt hash.  Rows created before
    hashing was introduced may still hold the plaintext password; those are
    migrated on the next successful login.

    ``version`` is bumped by every conditional update and serves as the
    compare-and-swap token for optimistic concurrency.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)

    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tax_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    tax_id_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    subscription_status: Mapped[str] = mapped_column(String(16), nullable=False, default="TRIAL")
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_billing_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    member_since: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "subscription_status IN ('FREE','TRIAL','ACTIVE','PENDING','CANCELED')",
            name="ck_accounts_subscription_status",
        ),
        UniqueConstraint("email", name="uq_accounts_email"),
        Index("ix_accounts_phone_hash", "phone_hash", unique=True),
        Index("ix_accounts_tax_id_hash", "tax_id_hash", unique=True),
        Index("ix_accounts_status", "subscription_status"),
    )


# ---------------------------------------------------------------------------
# Invoice ledger
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Append-only ledger of payments received for an account.

    One row per external payment reference; the unique constraint on
    ``(account_id, external_payment_id)`` makes redelivered payment events
    harmless.
    """

    __tablename__ = "account_invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    external_payment_id: Mapped[str] = mapped_column(String(256), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PAID")
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PAID','PENDING','EXPIRED')",
            name="ck_account_invoices_status",
        ),
        UniqueConstraint("account_id", "external_payment_id", name="uq_account_invoices_payment"),
        Index("ix_account_invoices_account_issued", "account_id", "issued_at"),
    )


# ---------------------------------------------------------------------------
# Store contacts
# ---------------------------------------------------------------------------


class CustomerTable(Base):
    """Store customers; ``phone`` is encrypted with a blind index."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    pipeline_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_customers_store", "store_id"),
        Index("ix_customers_store_phone_hash", "store_id", "phone_hash"),
    )


class SupplierTable(Base):
    """Store suppliers; ``phone`` is encrypted with a blind index."""

    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_suppliers_store", "store_id"),
        Index("ix_suppliers_store_phone_hash", "store_id", "phone_hash"),
    )
