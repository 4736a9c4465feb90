"""Payment-gateway event model and event-type vocabulary.

The gateway posts a flat JSON body; the event type arrives in ``event`` or,
for older deliveries, in ``status``.  Several spellings map to each kind.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentEventKind(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


_EVENT_ALIASES: dict[str, PaymentEventKind] = {
    "payment.approved": PaymentEventKind.APPROVED,
    "approved": PaymentEventKind.APPROVED,
    "paid": PaymentEventKind.APPROVED,
    "payment.pending": PaymentEventKind.PENDING,
    "pending": PaymentEventKind.PENDING,
    "waiting": PaymentEventKind.PENDING,
    "payment.failed": PaymentEventKind.CANCELED,
    "payment.canceled": PaymentEventKind.CANCELED,
    "failed": PaymentEventKind.CANCELED,
    "canceled": PaymentEventKind.CANCELED,
    "refunded": PaymentEventKind.CANCELED,
}


def classify_event_type(event_type: str | None) -> PaymentEventKind:
    """Map a raw gateway event type onto a :class:`PaymentEventKind`."""
    if not event_type:
        return PaymentEventKind.UNKNOWN
    return _EVENT_ALIASES.get(event_type.strip().lower(), PaymentEventKind.UNKNOWN)


class PaymentEvent(BaseModel):
    """An authenticated, parsed payment-gateway delivery."""

    model_config = ConfigDict(extra="ignore")

    event: str | None = None
    status: str | None = None
    payment_id: str | None = Field(default=None, max_length=256)
    customer_email: str = Field(..., min_length=3, max_length=320)
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount", mode="before")
    @classmethod
    def _missing_amount_is_zero(cls, v: Any) -> Any:
        if v is None or v == "":
            return Decimal("0")
        return v

    @field_validator("payment_id", mode="before")
    @classmethod
    def _stringify_payment_id(cls, v: Any) -> Any:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @property
    def event_type(self) -> str:
        return self.event or self.status or ""

    @property
    def kind(self) -> PaymentEventKind:
        return classify_event_type(self.event_type)

    @property
    def payment_method(self) -> str | None:
        method = self.metadata.get("payment_method")
        return str(method) if method else None
