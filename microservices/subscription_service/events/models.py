"""
Subscription Event Models

Defines event types and payload structures for subscription lifecycle events
and the payment events this service consumes.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field


class SubscriptionEventType(str, Enum):
    """Subscription event types"""
    # Subscription Lifecycle
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_SUSPENDED = "subscription.suspended"
    SUBSCRIPTION_CANCELED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"

    # Plan Changes
    PLAN_CHANGED = "subscription.plan_changed"
    PLAN_CHANGE_SCHEDULED = "subscription.plan_change_scheduled"

    # Dunning
    PAYMENT_FAILED = "subscription.payment.failed"
    PAYMENT_RECOVERED = "subscription.payment.recovered"


class SubscriptionEvent(BaseModel):
    """Base subscription event payload"""
    subscription_id: str
    workspace_id: str
    status: Optional[str] = None
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class PaymentSignalEvent(BaseModel):
    """
    payment.failed / payment.succeeded payload from the payment service.

    Extra fields are ignored; invoice_id is the only required key.
    """
    invoice_id: str
    subscription_id: Optional[str] = None
    workspace_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    error_message: Optional[str] = None
