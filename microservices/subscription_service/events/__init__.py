"""
Subscription Service Events

Publishers and payload models for subscription-related events.

SubscriptionEventHandlers lives in .handlers and is imported where the
subscriptions are registered, since it depends on the dunning service.
"""

from .publishers import SubscriptionEventPublisher
from .models import SubscriptionEventType, SubscriptionEvent, PaymentSignalEvent

__all__ = [
    "SubscriptionEventPublisher",
    "SubscriptionEventType",
    "SubscriptionEvent",
    "PaymentSignalEvent",
]
