"""Subscription lifecycle and payment-event handling."""

from identity_core.subscription.events import PaymentEvent, PaymentEventKind
from identity_core.subscription.lifecycle import SubscriptionLifecycle, SubscriptionStatus

__all__ = [
    "PaymentEvent",
    "PaymentEventKind",
    "SubscriptionLifecycle",
    "SubscriptionStatus",
]
