"""Initial identity schema.

Creates ``accounts``, the ``account_invoices`` ledger, and the store contact
tables ``customers`` and ``suppliers``.  Sensitive columns hold
``hex(iv):hex(ciphertext)`` text next to a 64-character blind-index column.

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(256), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("phone_hash", sa.String(64), nullable=True),
        sa.Column("tax_id", sa.Text(), nullable=True),
        sa.Column("tax_id_hash", sa.String(64), nullable=True),
        sa.Column(
            "subscription_status",
            sa.String(16),
            nullable=False,
            server_default="TRIAL",
        ),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "member_since",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint(
            "subscription_status IN ('FREE','TRIAL','ACTIVE','PENDING','CANCELED')",
            name="ck_accounts_subscription_status",
        ),
        sa.UniqueConstraint("email", name="uq_accounts_email"),
    )
    op.create_index("ix_accounts_phone_hash", "accounts", ["phone_hash"], unique=True)
    op.create_index("ix_accounts_tax_id_hash", "accounts", ["tax_id_hash"], unique=True)
    op.create_index("ix_accounts_status", "accounts", ["subscription_status"])

    op.create_table(
        "account_invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "account_id",
            sa.String(64),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_payment_id", sa.String(256), nullable=False),
        sa.Column(
            "issued_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PAID"),
        sa.Column("payment_method", sa.String(64), nullable=True),
        sa.Column("receipt_url", sa.String(1024), nullable=True),
        sa.CheckConstraint(
            "status IN ('PAID','PENDING','EXPIRED')",
            name="ck_account_invoices_status",
        ),
        sa.UniqueConstraint("account_id", "external_payment_id", name="uq_account_invoices_payment"),
    )
    op.create_index(
        "ix_account_invoices_account_issued",
        "account_invoices",
        ["account_id", "issued_at"],
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("store_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("phone_hash", sa.String(64), nullable=True),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("pipeline_stage", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_customers_store", "customers", ["store_id"])
    op.create_index("ix_customers_store_phone_hash", "customers", ["store_id", "phone_hash"])

    op.create_table(
        "suppliers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("store_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("contact_name", sa.String(256), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("phone_hash", sa.String(64), nullable=True),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_suppliers_store", "suppliers", ["store_id"])
    op.create_index("ix_suppliers_store_phone_hash", "suppliers", ["store_id", "phone_hash"])


def downgrade() -> None:
    op.drop_index("ix_suppliers_store_phone_hash", table_name="suppliers")
    op.drop_index("ix_suppliers_store", table_name="suppliers")
    op.drop_table("suppliers")
    op.drop_index("ix_customers_store_phone_hash", table_name="customers")
    op.drop_index("ix_customers_store", table_name="customers")
    op.drop_table("customers")
    op.drop_index("ix_account_invoices_account_issued", table_name="account_invoices")
    op.drop_table("account_invoices")
    op.drop_index("ix_accounts_status", table_name="accounts")
    op.drop_index("ix_accounts_tax_id_hash", table_name="accounts")
    op.drop_index("ix_accounts_phone_hash", table_name="accounts")
    op.drop_table("accounts")
