"""
Subscription Service Factory

Factory functions for creating service instances with real dependencies.
This is the ONLY place that imports I/O-dependent modules.

Usage:
    from .factory import create_billing_components
    components = create_billing_components(settings, event_bus)
"""
from dataclasses import dataclass
from typing import List, Optional

from core.config import AppConfig, get_settings

from .dunning_service import DunningService
from .plan_change import PlanChangeScheduler
from .proration import ProrationCalculator
from .subscription_service import SubscriptionLifecycleService
from .sweeps import BillingSweepRunner


@dataclass
class BillingComponents:
    """Wired services sharing one repository pair and clock"""
    lifecycle: SubscriptionLifecycleService
    plan_changes: PlanChangeScheduler
    dunning: DunningService
    sweeps: BillingSweepRunner
    closeables: List

    async def initialize(self):
        await self.lifecycle.initialize()
        await self.dunning.invoices.initialize()

    async def close(self):
        for client in self.closeables:
            await client.close()
        await self.dunning.invoices.close()
        await self.lifecycle.close()


def create_subscription_service(
    settings: Optional[AppConfig] = None,
    event_bus=None,
) -> SubscriptionLifecycleService:
    """
    Create SubscriptionLifecycleService with real dependencies.

    This function imports the real repository (which has I/O dependencies).
    Use this in production, NOT in tests.
    """
    return create_billing_components(settings, event_bus).lifecycle


def create_billing_components(
    settings: Optional[AppConfig] = None,
    event_bus=None,
) -> BillingComponents:
    """
    Build lifecycle, plan change, dunning and sweep services on top of the
    PostgreSQL repositories and the collaborator HTTP clients.

    Args:
        settings: Application settings (defaults to global settings)
        event_bus: Event bus for publishing events

    Returns:
        BillingComponents ready for initialize()
    """
    settings = settings or get_settings()

    # Import real repositories and clients here (not at module level)
    from .clients import CatalogClient, EntitlementClient, NotificationClient, PaymentClient
    from .invoice_repository import InvoiceRepository
    from .subscription_repository import SubscriptionRepository

    catalog = CatalogClient(config=settings.services)
    entitlements = EntitlementClient(config=settings.services)
    notifications = NotificationClient(config=settings.services)
    payments = PaymentClient(config=settings.services)

    lifecycle = SubscriptionLifecycleService(
        repository=SubscriptionRepository(),
        entitlements=entitlements,
        config=settings.subscriptions,
        event_bus=event_bus,
    )
    plan_changes = PlanChangeScheduler(
        lifecycle,
        catalog,
        entitlements,
        ProrationCalculator(lifecycle.clock, settings.subscriptions, catalog),
    )
    dunning = DunningService(
        lifecycle,
        InvoiceRepository(),
        entitlements=entitlements,
        notifications=notifications,
        payment_gateway=payments,
        config=settings.dunning,
    )
    sweeps = BillingSweepRunner(lifecycle, dunning, plan_changes, settings.dunning)

    return BillingComponents(
        lifecycle=lifecycle,
        plan_changes=plan_changes,
        dunning=dunning,
        sweeps=sweeps,
        closeables=[catalog, entitlements, notifications, payments],
    )
