"""
Proration Calculator

Pro-rata credit and charge for a mid-cycle plan change. Pure arithmetic over
the subscription's period boundaries and the injected clock; the only I/O is
the catalog lookup in preview_plan_change.
"""

import logging
from decimal import Decimal
from typing import Optional

from core.config import SubscriptionConfig

from .models import BillingCycle, Package, ProrationResult, Subscription, round_money
from .protocols import Clock, PackageCatalogProtocol, SubscriptionValidationError

logger = logging.getLogger(__name__)

FRACTION_QUANTUM = Decimal("0.0001")


class ProrationCalculator:
    """Computes proration results for plan changes"""

    def __init__(
        self,
        clock: Clock,
        config: Optional[SubscriptionConfig] = None,
        catalog: Optional[PackageCatalogProtocol] = None,
    ):
        self.clock = clock
        self.config = config or SubscriptionConfig()
        self.catalog = catalog

    def calculate_proration(
        self,
        subscription: Subscription,
        from_package: Package,
        to_package: Package,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> ProrationResult:
        """
        Credit the unused share of the current plan and charge the new plan
        for the same remaining span.

        net_amount > 0 means the customer pays, < 0 means a credit balance.
        """
        cycle = BillingCycle(billing_cycle or subscription.billing_cycle)
        now = self.clock.now()
        start = subscription.current_period_start
        end = subscription.current_period_end

        total_period_days = (end - start).days
        if total_period_days <= 0:
            total_period_days = cycle.period_days

        days_used = min(max(0, (now - start).days), total_period_days)
        days_remaining = min(max(0, (end - now).days), total_period_days)

        total = Decimal(total_period_days)
        remaining_fraction = Decimal(days_remaining) / total
        used_fraction = (Decimal(days_used) / total).quantize(FRACTION_QUANTUM)

        current_price = Decimal(from_package.get_price(cycle))
        new_price = Decimal(to_package.get_price(cycle))

        credit_amount = round_money(current_price * remaining_fraction)
        prorated_new_cost = round_money(new_price * remaining_fraction)
        net_amount = prorated_new_cost - credit_amount

        return ProrationResult(
            days_remaining=days_remaining,
            total_period_days=total_period_days,
            used_fraction=used_fraction,
            current_plan_price=current_price,
            new_plan_price=new_price,
            credit_amount=credit_amount,
            prorated_new_plan_cost=prorated_new_cost,
            net_amount=net_amount,
            currency=self.config.currency,
        )

    async def resolve_current_package(self, subscription: Subscription) -> Package:
        """Look up the subscription's current package in the catalog"""
        package = None
        if subscription.package_code and self.catalog is not None:
            package = await self.catalog.get_package(subscription.package_code)

        if package is None:
            raise SubscriptionValidationError(
                f"Subscription {subscription.subscription_id} has no current package"
            )
        return package

    async def preview_plan_change(
        self,
        subscription: Subscription,
        new_package: Package,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> ProrationResult:
        """Proration for a prospective change, without mutating anything"""
        current_package = await self.resolve_current_package(subscription)
        return self.calculate_proration(
            subscription,
            current_package,
            new_package,
            billing_cycle or subscription.billing_cycle,
        )


__all__ = ["ProrationCalculator"]
