"""Subscription state machine: lazy trial expiry and payment-event transitions.

States and the transitions this module performs::

    TRIAL ──(now > trial_ends_at, on access)──────────────▶ PENDING
    TRIAL | PENDING | FREE | CANCELED ──(approved)────────▶ ACTIVE
    ACTIVE | TRIAL | FREE | CANCELED ──(pending)──────────▶ PENDING
    ACTIVE | TRIAL | PENDING ──(failed/canceled/refunded)─▶ CANCELED

There is no background timer: trial expiry is evaluated when the account is
accessed.  Every transition is a single conditional UPDATE on the current
status, so redelivered or concurrent events cannot apply twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from identity_core.config import Settings
from identity_core.errors import UnknownWebhookSubject
from identity_core.state.repository import AccountRepository, InvoiceRepository
from identity_core.state.tables import AccountTable
from identity_core.subscription.events import PaymentEvent, PaymentEventKind

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


class SubscriptionStatus(str, Enum):
    FREE = "FREE"
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    CANCELED = "CANCELED"


ACTIVATABLE = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.PENDING, SubscriptionStatus.FREE, SubscriptionStatus.CANCELED}
)
SUSPENDABLE = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.FREE, SubscriptionStatus.CANCELED}
)
CANCELABLE = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.PENDING})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def initial_state(now: datetime, trial_window: timedelta, *, free: bool = False) -> dict[str, Any]:
    """Column values for a freshly registered account."""
    if free:
        return {"subscription_status": SubscriptionStatus.FREE.value, "trial_ends_at": None}
    return {"subscription_status": SubscriptionStatus.TRIAL.value, "trial_ends_at": now + trial_window}


def trial_expired(account: AccountTable, now: datetime) -> bool:
    """Return ``True`` when a TRIAL account's window has elapsed."""
    return (
        account.subscription_status == SubscriptionStatus.TRIAL.value
        and account.trial_ends_at is not None
        and now > account.trial_ends_at
    )


@dataclass(frozen=True)
class EventOutcome:
    """Result of applying one payment event."""

    status: str
    reason: str | None = None
    account_id: str | None = None
    subscription_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.account_id is not None:
            payload["account_id"] = self.account_id
        if self.subscription_status is not None:
            payload["subscription_status"] = self.subscription_status
        return payload


class SubscriptionLifecycle:
    """Applies subscription transitions to accounts.

    Parameters
    ----------
    accounts, invoices:
        Repositories bound to the caller's session.
    settings:
        Trial window, billing period and receipt defaults.
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        invoices: InvoiceRepository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._accounts = accounts
        self._invoices = invoices
        self._settings = settings
        self._clock = clock

    # -- access-time enforcement -------------------------------------------

    async def enforce_trial_expiry(self, account: AccountTable) -> AccountTable:
        """Flip an expired TRIAL account to PENDING and return the current row."""
        now = self._clock()
        if not trial_expired(account, now):
            return account

        won = await self._accounts.transition_status(
            account.id,
            allowed_from=[SubscriptionStatus.TRIAL.value],
            to_status=SubscriptionStatus.PENDING.value,
        )
        if won:
            logger.info("Trial expired for account %s; status now PENDING", account.id)
        refreshed = await self._accounts.get_by_id(account.id)
        return refreshed if refreshed is not None else account

    # -- payment events ----------------------------------------------------

    async def apply_event(self, event: PaymentEvent) -> EventOutcome:
        """Apply a payment event to the account owning ``customer_email``.

        Raises :class:`UnknownWebhookSubject` when no account matches; nothing
        is mutated in that case.
        """
        account = await self._accounts.get_by_email(event.customer_email)
        if account is None:
            raise UnknownWebhookSubject(event.customer_email)

        kind = event.kind
        if kind is PaymentEventKind.APPROVED:
            return await self._approve(account, event)
        if kind is PaymentEventKind.PENDING:
            return await self._transition(account, SUSPENDABLE, SubscriptionStatus.PENDING)
        if kind is PaymentEventKind.CANCELED:
            if event.reason:
                logger.info("Payment canceled for account %s: %s", account.id, event.reason)
            return await self._transition(account, CANCELABLE, SubscriptionStatus.CANCELED)

        logger.warning("Ignoring payment event with unknown type %r", event.event_type)
        return EventOutcome(
            status="noop",
            reason="unknown_event",
            account_id=account.id,
            subscription_status=account.subscription_status,
        )

    async def _approve(self, account: AccountTable, event: PaymentEvent) -> EventOutcome:
        if event.payment_id is None:
            logger.warning("Approval event for account %s has no payment reference", account.id)
            return EventOutcome(status="rejected", reason="missing_payment_id", account_id=account.id)

        if await self._invoices.has_payment(account.id, event.payment_id):
            return EventOutcome(
                status="noop",
                reason="duplicate_payment",
                account_id=account.id,
                subscription_status=account.subscription_status,
            )

        now = self._clock()
        won = await self._accounts.transition_status(
            account.id,
            allowed_from=[s.value for s in ACTIVATABLE],
            to_status=SubscriptionStatus.ACTIVE.value,
            next_billing_at=now + self._settings.billing_period,
            trial_ends_at=None,
        )
        if not won:
            return EventOutcome(
                status="noop",
                reason="already_active",
                account_id=account.id,
                subscription_status=SubscriptionStatus.ACTIVE.value,
            )

        await self._invoices.append(
            account.id,
            event.payment_id,
            amount=event.amount.quantize(_CENTS),
            issued_at=now,
            status="PAID",
            payment_method=event.payment_method or self._settings.default_payment_method,
            receipt_url=self._settings.receipt_url_template.format(payment_id=event.payment_id),
        )
        logger.info("Subscription activated for account %s (payment %s)", account.id, event.payment_id)
        return EventOutcome(
            status="applied",
            account_id=account.id,
            subscription_status=SubscriptionStatus.ACTIVE.value,
        )

    async def _transition(
        self,
        account: AccountTable,
        allowed_from: frozenset[SubscriptionStatus],
        to_status: SubscriptionStatus,
    ) -> EventOutcome:
        won = await self._accounts.transition_status(
            account.id,
            allowed_from=[s.value for s in allowed_from],
            to_status=to_status.value,
        )
        if not won:
            current = await self._accounts.get_by_id(account.id)
            return EventOutcome(
                status="noop",
                reason="transition_not_allowed",
                account_id=account.id,
                subscription_status=current.subscription_status if current else None,
            )
        logger.info("Subscription for account %s moved to %s", account.id, to_status.value)
        return EventOutcome(status="applied", account_id=account.id, subscription_status=to_status.value)

    # -- maintenance -------------------------------------------------------

    async def repair_trial_windows(self) -> int:
        """Reset every TRIAL account's window to ``member_since + trial_window``.

        A repaired account also gets ``next_billing_at`` moved to the new trial
        end, so billing views show when the trial runs out.  Returns the number
        of accounts whose window changed.
        """
        repaired = 0
        for account in await self._accounts.list_by_status(SubscriptionStatus.TRIAL.value):
            target = account.member_since + self._settings.trial_window
            if account.trial_ends_at == target:
                continue
            won = await self._accounts.compare_and_set(
                account.id,
                "subscription_status",
                SubscriptionStatus.TRIAL.value,
                trial_ends_at=target,
                next_billing_at=target,
            )
            if won:
                repaired += 1
        logger.info("Repaired %d trial window(s)", repaired)
        return repaired
