"""Billing service: payment-gateway events and subscription views.

Wraps :class:`SubscriptionLifecycle` for one request.  Webhook signature
verification happens in the router before this service is reached; events
handed to :meth:`BillingService.handle_subscription_event` are already
authenticated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from identity_core.config import Settings
from identity_core.errors import UnknownWebhookSubject
from identity_core.state.repository import AccountRepository, InvoiceRepository
from identity_core.state.tables import AccountTable
from identity_core.subscription.events import PaymentEvent
from identity_core.subscription.lifecycle import SubscriptionLifecycle
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.auth_service import invoice_to_dict

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingService:
    """Subscription lifecycle operations bound to a database session.

    Parameters
    ----------
    session:
        An async database session (caller manages transaction).
    settings:
        Identity settings (billing period, receipt defaults).
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._accounts = AccountRepository(session)
        self._invoices = InvoiceRepository(session)
        self._lifecycle = SubscriptionLifecycle(self._accounts, self._invoices, settings, clock=clock)

    async def handle_subscription_event(self, event: PaymentEvent | dict[str, Any]) -> dict[str, Any]:
        """Apply a payment event.

        Returns
        -------
        dict
            ``status`` is ``applied``, ``noop`` or ``rejected``.  A rejected
            event carries a ``reason``; ``unknown_subject`` means no account
            matches the event's customer email and nothing was mutated.
        """
        if not isinstance(event, PaymentEvent):
            event = PaymentEvent.model_validate(event)

        try:
            outcome = await self._lifecycle.apply_event(event)
        except UnknownWebhookSubject as exc:
            logger.warning(
                "Payment event %r for unknown customer %s rejected",
                event.event_type,
                exc.email,
            )
            return {"status": "rejected", "reason": "unknown_subject"}

        return outcome.to_dict()

    async def get_subscription(self, account: AccountTable) -> dict[str, Any]:
        """Subscription state and invoice ledger of *account*."""
        ledger = await self._invoices.list_for_account(account.id)
        return {
            "status": account.subscription_status,
            "trial_ends_at": account.trial_ends_at,
            "next_billing_at": account.next_billing_at,
            "member_since": account.member_since,
            "invoices": [invoice_to_dict(inv) for inv in ledger],
        }

    async def repair_trial_windows(self) -> int:
        """Reset every TRIAL account's window to ``member_since + trial_window``."""
        return await self._lifecycle.repair_trial_windows()
