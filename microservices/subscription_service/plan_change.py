"""
Plan Change Scheduler

Moves a subscription to another package, either now (with optional
proration) or at the end of the current period.
"""

import logging
from typing import Optional

from .models import (
    BillingCycle,
    Package,
    PendingPlanChange,
    PlanChangeRecord,
    PlanChangeResult,
    ProrationResult,
    Subscription,
)
from .proration import ProrationCalculator
from .protocols import (
    ConcurrentModificationError,
    EntitlementServiceProtocol,
    PackageCatalogProtocol,
    PackageNotFoundError,
    SubscriptionServiceError,
    SubscriptionValidationError,
)
from .subscription_service import SubscriptionLifecycleService

logger = logging.getLogger(__name__)


class PlanChangeScheduler:
    """Immediate and period-end plan changes"""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycleService,
        catalog: PackageCatalogProtocol,
        entitlements: EntitlementServiceProtocol,
        proration: Optional[ProrationCalculator] = None,
    ):
        self.lifecycle = lifecycle
        self.catalog = catalog
        self.entitlements = entitlements
        self.proration = proration or ProrationCalculator(
            lifecycle.clock, lifecycle.config, catalog
        )

    async def _get_package(self, code: str) -> Package:
        package = await self.catalog.get_package(code)
        if package is None:
            raise PackageNotFoundError(f"Package {code} not found")
        return package

    async def _current_package(self, subscription: Subscription) -> Optional[Package]:
        if not subscription.package_code:
            return None
        return await self.catalog.get_package(subscription.package_code)

    async def preview_plan_change(
        self,
        subscription_id: str,
        new_package_code: str,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> ProrationResult:
        subscription = await self.lifecycle.get_subscription(subscription_id)
        new_package = await self._get_package(new_package_code)
        return await self.proration.preview_plan_change(subscription, new_package, billing_cycle)

    async def change_plan(
        self,
        subscription_id: str,
        new_package_code: str,
        prorate: bool = True,
        immediate: bool = True,
    ) -> PlanChangeResult:
        """
        Change the subscription's package.

        Immediate changes provision the new package, repoint the subscription
        at the new assignment and revoke the old package; period boundaries
        are untouched and the proration is returned for the caller to bill.
        Deferred changes only record a pending change for the period-end sweep.
        """
        subscription = await self.lifecycle.get_subscription(subscription_id)
        self.lifecycle.ensure_not_terminated(subscription)

        new_package = await self._get_package(new_package_code)
        if new_package.code == subscription.package_code:
            raise SubscriptionValidationError(
                f"Subscription {subscription_id} is already on package {new_package.code}"
            )

        if not immediate:
            saved = await self._schedule(subscription, new_package)
            return PlanChangeResult(subscription=saved, proration=None, immediate=False)

        proration = None
        if prorate and self.lifecycle.config.allow_proration:
            current_package = await self._current_package(subscription)
            if current_package is not None:
                proration = self.proration.calculate_proration(
                    subscription, current_package, new_package, subscription.billing_cycle
                )

        saved = await self._apply_now(subscription, new_package, proration)
        return PlanChangeResult(subscription=saved, proration=proration, immediate=True)

    async def _schedule(self, subscription: Subscription, new_package: Package) -> Subscription:
        updated = subscription.model_copy(deep=True)
        updated.pending_plan_change = PendingPlanChange(
            to_package_code=new_package.code,
            requested_at=self.lifecycle.clock.now(),
            scheduled_for=subscription.current_period_end,
        )

        saved = await self.lifecycle.commit(updated)
        logger.info(
            f"Plan change to {new_package.code} scheduled for subscription "
            f"{saved.subscription_id} at {saved.current_period_end.isoformat()}"
        )
        await self.lifecycle.publisher.publish_plan_change_scheduled(saved)
        return saved

    async def _apply_now(
        self,
        subscription: Subscription,
        new_package: Package,
        proration: Optional[ProrationResult],
    ) -> Subscription:
        from_code = subscription.package_code

        assignment = await self.entitlements.provision_package(
            subscription.workspace_id,
            new_package.code,
            {
                "subscription_id": subscription.subscription_id,
                "source": subscription.gateway,
                "prorated_from": from_code,
            },
        )
        if assignment is None:
            raise SubscriptionServiceError(
                f"Failed to provision package {new_package.code} for workspace {subscription.workspace_id}"
            )

        updated = subscription.model_copy(deep=True)
        updated.package_assignment_id = assignment.assignment_id
        updated.package_code = new_package.code
        updated.pending_plan_change = None
        updated.last_plan_change = PlanChangeRecord(
            from_package_code=from_code,
            to_package_code=new_package.code,
            changed_at=self.lifecycle.clock.now(),
            proration=proration.to_dict() if proration else None,
        )

        try:
            saved = await self.lifecycle.commit(updated)
        except ConcurrentModificationError:
            # Undo the grant so the losing writer leaves no orphan assignment
            await self.entitlements.revoke_package(subscription.workspace_id, new_package.code)
            raise

        if from_code:
            revoked = await self.entitlements.revoke_package(subscription.workspace_id, from_code)
            if not revoked:
                logger.warning(
                    f"Failed to revoke package {from_code} for workspace {subscription.workspace_id}"
                )

        logger.info(
            f"Subscription {saved.subscription_id} plan changed {from_code} -> {new_package.code}"
        )
        await self.lifecycle.publisher.publish_plan_changed(
            saved, from_code, proration.to_dict() if proration else None
        )
        return saved

    async def has_pending_plan_change(self, subscription_id: str) -> bool:
        subscription = await self.lifecycle.get_subscription(subscription_id)
        return subscription.pending_plan_change is not None

    async def get_pending_plan_change(self, subscription_id: str) -> Optional[PendingPlanChange]:
        subscription = await self.lifecycle.get_subscription(subscription_id)
        return subscription.pending_plan_change

    async def cancel_scheduled_plan_change(self, subscription_id: str) -> Subscription:
        subscription = await self.lifecycle.get_subscription(subscription_id)
        self.lifecycle.ensure_not_terminated(subscription)
        if subscription.pending_plan_change is None:
            return subscription

        updated = subscription.model_copy(deep=True)
        updated.pending_plan_change = None
        saved = await self.lifecycle.commit(updated)
        logger.info(f"Scheduled plan change cancelled for subscription {subscription_id}")
        return saved

    async def apply_scheduled_plan_change(self, subscription_id: str) -> Optional[Subscription]:
        """Apply a pending change at period end, without proration"""
        subscription = await self.lifecycle.get_subscription(subscription_id)
        self.lifecycle.ensure_not_terminated(subscription)

        pending = subscription.pending_plan_change
        if pending is None:
            return None

        if pending.to_package_code == subscription.package_code:
            updated = subscription.model_copy(deep=True)
            updated.pending_plan_change = None
            return await self.lifecycle.commit(updated)

        new_package = await self.catalog.get_package(pending.to_package_code)
        if new_package is None:
            logger.warning(
                f"Scheduled plan change failed for subscription {subscription_id}: "
                f"package {pending.to_package_code} not found"
            )
            return None

        return await self._apply_now(subscription, new_package, None)


__all__ = ["PlanChangeScheduler"]
