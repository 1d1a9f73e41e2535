"""
Subscription Service Protocols (Interfaces)

These interfaces define contracts for dependency injection.
NO import-time I/O dependencies - safe to import anywhere.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

# Import only models (no I/O dependencies)
from .models import (
    Invoice,
    NotificationType,
    Package,
    PackageAssignment,
    Subscription,
)


# Custom exceptions - defined here to avoid importing repository
class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors"""
    pass


class SubscriptionNotFoundError(SubscriptionServiceError):
    """Subscription not found"""
    pass


class InvoiceNotFoundError(SubscriptionServiceError):
    """Invoice not found"""
    pass


class PackageNotFoundError(SubscriptionServiceError):
    """Package not found in the catalog"""
    pass


class SubscriptionValidationError(SubscriptionServiceError):
    """Validation error"""
    pass


class RenewalNotDueError(SubscriptionValidationError):
    """Renewal requested before the current period has ended"""
    pass


class SubscriptionTerminatedError(SubscriptionServiceError):
    """Subscription has ended and can no longer change"""
    pass


class PausingDisabledError(SubscriptionServiceError):
    """Voluntary pausing is switched off"""
    pass


class PauseLimitExceededError(SubscriptionServiceError):
    """Voluntary pause ceiling reached"""

    def __init__(self, subscription_id: str, max_pause_cycles: int):
        self.subscription_id = subscription_id
        self.max_pause_cycles = max_pause_cycles
        super().__init__(
            f"Subscription {subscription_id} has reached the maximum of "
            f"{max_pause_cycles} pause cycles"
        )


class ConcurrentModificationError(SubscriptionServiceError):
    """Another writer updated the record first"""
    pass


@runtime_checkable
class Clock(Protocol):
    """Source of the current time"""

    def now(self) -> datetime:
        ...


@runtime_checkable
class SubscriptionRepositoryProtocol(Protocol):
    """
    Interface for Subscription Repository.

    Implementations must provide these methods.
    Used for dependency injection to enable testing.
    """

    async def initialize(self) -> None:
        """Initialize repository"""
        ...

    async def close(self) -> None:
        """Close repository connections"""
        ...

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription"""
        ...

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID"""
        ...

    async def save_subscription(
        self, subscription: Subscription, expected_version: int
    ) -> Optional[Subscription]:
        """
        Compare-and-set write. Returns the stored subscription with its
        version bumped, or None when the stored version differs.
        """
        ...

    async def list_subscriptions(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Subscription]:
        """List subscriptions with filters"""
        ...

    async def find_live_for_workspace(self, workspace_id: str) -> Optional[Subscription]:
        """First active, past_due or paused subscription of a workspace"""
        ...

    async def find_past_due(self) -> List[Subscription]:
        """Subscriptions in past_due status"""
        ...

    async def find_paused_before(self, cutoff: datetime) -> List[Subscription]:
        """Paused subscriptions whose paused_at is at or before cutoff"""
        ...

    async def find_expiring_between(self, start: datetime, end: datetime) -> List[Subscription]:
        """Active, uncancelled subscriptions with start < period end <= end"""
        ...

    async def find_cancelled_ended_before(self, cutoff: datetime) -> List[Subscription]:
        """Live subscriptions with a pending cancellation whose period ended by cutoff"""
        ...

    async def find_pending_plan_changes_due(self, cutoff: datetime) -> List[Subscription]:
        """Subscriptions with a pending plan change scheduled at or before cutoff"""
        ...


@runtime_checkable
class InvoiceRepositoryProtocol(Protocol):
    """Interface for the invoice store used by dunning"""

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    async def save_invoice(self, invoice: Invoice, expected_version: int) -> Optional[Invoice]:
        """Compare-and-set write; None when the race is lost"""
        ...

    async def find_due_for_retry(self, now: datetime) -> List[Invoice]:
        """Outstanding auto-charge invoices whose next attempt is due"""
        ...

    async def find_exhausted_for_workspace(
        self, workspace_id: str, last_attempt_before: datetime
    ) -> List[Invoice]:
        """Outstanding auto-charge invoices with no retry left and an old last attempt"""
        ...

    async def find_oldest_outstanding_for_workspace(self, workspace_id: str) -> Optional[Invoice]:
        """Outstanding auto-charge invoice with the earliest due date"""
        ...


@runtime_checkable
class PackageCatalogProtocol(Protocol):
    """Interface for package and price lookups"""

    async def get_package(self, code: str) -> Optional[Package]:
        ...


@runtime_checkable
class EntitlementServiceProtocol(Protocol):
    """Interface for workspace package assignments"""

    async def get_assignment(self, assignment_id: str) -> Optional[PackageAssignment]:
        ...

    async def provision_package(
        self, workspace_id: str, package_code: str, context: Optional[Dict[str, Any]] = None
    ) -> Optional[PackageAssignment]:
        ...

    async def revoke_package(self, workspace_id: str, package_code: str) -> bool:
        ...

    async def suspend_assignment(self, assignment_id: str, reason: str) -> bool:
        ...

    async def reactivate_assignment(self, assignment_id: str, reason: str) -> bool:
        ...

    async def expire_assignment(self, assignment_id: str) -> bool:
        ...


@runtime_checkable
class NotificationDispatcherProtocol(Protocol):
    """Interface for customer notifications"""

    async def dispatch(
        self,
        notification: NotificationType,
        subscription: Optional[Subscription],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        ...


@runtime_checkable
class PaymentGatewayProtocol(Protocol):
    """Interface for charging an invoice again"""

    async def retry_invoice_payment(self, invoice: Invoice) -> bool:
        """True when the charge succeeded"""
        ...


@runtime_checkable
class EventBusProtocol(Protocol):
    """Interface for Event Bus - no I/O imports"""

    async def publish_event(self, event: Any) -> None:
        """Publish an event"""
        ...


__all__ = [
    # Exceptions
    "SubscriptionServiceError",
    "SubscriptionNotFoundError",
    "InvoiceNotFoundError",
    "PackageNotFoundError",
    "SubscriptionValidationError",
    "RenewalNotDueError",
    "SubscriptionTerminatedError",
    "PausingDisabledError",
    "PauseLimitExceededError",
    "ConcurrentModificationError",
    # Protocols
    "Clock",
    "SubscriptionRepositoryProtocol",
    "InvoiceRepositoryProtocol",
    "PackageCatalogProtocol",
    "EntitlementServiceProtocol",
    "NotificationDispatcherProtocol",
    "PaymentGatewayProtocol",
    "EventBusProtocol",
]
