"""Pydantic request and response models for the identity API.

Sensitive fields only ever appear here in plaintext form; encryption and
blind indexing happen below the service layer.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for ``POST /auth/register``."""

    name: str = Field(..., min_length=1, max_length=256, description="Display name.")
    email: EmailStr = Field(..., description="Login email; unique per account.")
    password: str = Field(..., min_length=8, max_length=72, description="Password (8-72 characters).")
    phone: str | None = Field(default=None, max_length=64, description="Contact phone, stored encrypted.")
    tax_id: str | None = Field(default=None, max_length=64, description="Tax identifier, stored encrypted.")


class LoginRequest(BaseModel):
    """Request body for ``POST /auth/login``."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=1024)


class ProfileUpdateRequest(BaseModel):
    """Request body for ``PATCH /auth/me``.

    Omitted fields are left untouched; an explicit ``null`` or blank string
    clears a sensitive field.  ``expected_version`` may be supplied instead
    of an ``If-Match`` header.
    """

    name: str | None = Field(default=None, min_length=1, max_length=256)
    phone: str | None = Field(default=None, max_length=64)
    tax_id: str | None = Field(default=None, max_length=64)
    expected_version: int | None = Field(default=None, ge=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class InvoiceView(BaseModel):
    id: str
    external_payment_id: str
    issued_at: datetime
    amount: Decimal
    status: str
    payment_method: str | None = None
    receipt_url: str | None = None


class AccountView(BaseModel):
    """Decrypted account view.  Never carries hashes or the row version."""

    id: str
    name: str
    email: str
    phone: str | None = None
    tax_id: str | None = None
    subscription_status: str
    trial_ends_at: datetime | None = None
    next_billing_at: datetime | None = None
    member_since: datetime
    last_login_at: datetime | None = None
    invoices: list[InvoiceView] = Field(default_factory=list)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountView


class ProfileUpdateResponse(BaseModel):
    account: AccountView
    version: int


class SubscriptionResponse(BaseModel):
    status: str
    trial_ends_at: datetime | None = None
    next_billing_at: datetime | None = None
    member_since: datetime
    invoices: list[InvoiceView] = Field(default_factory=list)


class WebhookResult(BaseModel):
    """Outcome of one payment-gateway delivery."""

    status: str
    reason: str | None = None
    account_id: str | None = None
    subscription_status: str | None = None
