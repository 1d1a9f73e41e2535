"""
Subscription Service

Business logic for the subscription lifecycle: create, cancel (at period end
or immediately), resume, renew, pause/unpause and expire.

Uses dependency injection for testability.
- Repository, entitlement client and clock are injected
- Every write is a compare-and-set on the subscription version
"""

import logging
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from core.config import SubscriptionConfig

from .clock import SystemClock
from .events.publishers import SubscriptionEventPublisher
from .models import (
    BillingCycle,
    InitiatedBy,
    PackageAssignment,
    PauseStatus,
    PeriodExtension,
    StatusHistoryEntry,
    Subscription,
    SubscriptionStatus,
)
from .pause_guard import PauseCycleGuard
from .protocols import (
    Clock,
    ConcurrentModificationError,
    EntitlementServiceProtocol,
    PauseLimitExceededError,
    PausingDisabledError,
    RenewalNotDueError,
    SubscriptionNotFoundError,
    SubscriptionRepositoryProtocol,
    SubscriptionServiceError,
    SubscriptionTerminatedError,
    SubscriptionValidationError,
)

logger = logging.getLogger(__name__)


# ====================
# Subscription Lifecycle Service
# ====================

class SubscriptionLifecycleService:
    """Subscription state machine"""

    def __init__(
        self,
        repository: Optional[SubscriptionRepositoryProtocol] = None,
        entitlements: Optional[EntitlementServiceProtocol] = None,
        clock: Optional[Clock] = None,
        config: Optional[SubscriptionConfig] = None,
        event_bus=None,
        pause_guard: Optional[PauseCycleGuard] = None,
    ):
        """
        Initialize service with injected dependencies.

        Args:
            repository: Subscription repository (inject mock for testing)
            entitlements: Entitlement service client
            clock: Time source (defaults to SystemClock)
            config: Subscription settings
            event_bus: Event bus for publishing events
            pause_guard: Voluntary pause ceiling (built from config if omitted)
        """
        self.repository = repository
        self.entitlements = entitlements
        self.clock = clock or SystemClock()
        self.config = config or SubscriptionConfig()
        self.pause_guard = pause_guard or PauseCycleGuard(self.config)
        self.event_bus = event_bus
        self.publisher = SubscriptionEventPublisher(event_bus)

    async def initialize(self):
        """Initialize the service"""
        await self.repository.initialize()
        logger.info("Subscription lifecycle service initialized")

    async def close(self):
        await self.repository.close()

    # ====================
    # Persistence helpers
    # ====================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.repository.get_subscription(subscription_id)
        if not subscription:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    async def list_subscriptions(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> List[Subscription]:
        return await self.repository.list_subscriptions(
            workspace_id=workspace_id,
            status=status.value if status else None,
            limit=page_size,
            offset=(page - 1) * page_size,
        )

    def ensure_not_terminated(self, subscription: Subscription) -> None:
        if subscription.is_terminal:
            raise SubscriptionTerminatedError(
                f"Subscription {subscription.subscription_id} ended at "
                f"{subscription.ended_at.isoformat()}"
            )

    def _transition(
        self,
        subscription: Subscription,
        to_status: SubscriptionStatus,
        reason: Optional[str],
        initiated_by: InitiatedBy,
    ) -> None:
        """Change status in place, appending to the history when it differs"""
        if subscription.status == to_status:
            return
        subscription.status_history.append(StatusHistoryEntry(
            from_status=subscription.status,
            to_status=to_status,
            changed_at=self.clock.now(),
            reason=reason,
            initiated_by=initiated_by,
        ))
        subscription.status = to_status

    async def commit(self, updated: Subscription) -> Subscription:
        """
        Persist a modified copy against the version it was read at.

        Raises:
            ConcurrentModificationError: another writer got there first
        """
        updated.updated_at = self.clock.now()
        saved = await self.repository.save_subscription(updated, expected_version=updated.version)
        if saved is None:
            raise ConcurrentModificationError(
                f"Subscription {updated.subscription_id} changed since version {updated.version}"
            )
        return saved

    # ====================
    # Creation
    # ====================

    async def create(
        self,
        package_assignment: PackageAssignment,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        gateway: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
        gateway_customer_id: Optional[str] = None,
    ) -> Subscription:
        """Create an active subscription for a workspace package assignment"""
        now = self.clock.now()
        cycle = BillingCycle(billing_cycle)

        subscription = Subscription(
            subscription_id=f"sub_{uuid.uuid4().hex[:16]}",
            workspace_id=package_assignment.workspace_id,
            package_assignment_id=package_assignment.assignment_id,
            package_code=package_assignment.package_code,
            gateway=gateway or self.config.default_gateway,
            gateway_subscription_id=gateway_subscription_id,
            gateway_customer_id=gateway_customer_id,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=cycle,
            current_period_start=now,
            current_period_end=now + timedelta(days=cycle.period_days),
            status_history=[StatusHistoryEntry(
                from_status=None,
                to_status=SubscriptionStatus.ACTIVE,
                changed_at=now,
                reason="created",
                initiated_by=InitiatedBy.SYSTEM,
            )],
            created_at=now,
            updated_at=now,
        )

        created = await self.repository.create_subscription(subscription)
        logger.info(
            f"Created subscription {created.subscription_id} for workspace "
            f"{created.workspace_id} ({created.package_code}, {cycle.value})"
        )
        await self.publisher.publish_created(created)
        return created

    # ====================
    # Cancellation
    # ====================

    async def request_cancellation_at_period_end(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
    ) -> Subscription:
        """Mark for cancellation; status is unchanged and access runs to period end"""
        subscription = await self.get_subscription(subscription_id)
        self.ensure_not_terminated(subscription)

        updated = subscription.model_copy(deep=True)
        updated.cancelled_at = self.clock.now()
        updated.cancellation_reason = reason

        saved = await self.commit(updated)
        logger.info(
            f"Subscription {subscription_id} will cancel at period end "
            f"{saved.current_period_end.isoformat()}"
        )
        await self.publisher.publish_cancelled(saved, immediate=False)
        return saved

    async def cancel_immediately(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        expire: bool = False,
        initiated_by: InitiatedBy = InitiatedBy.ADMIN,
    ) -> Subscription:
        """End the subscription now as cancelled (or expired)"""
        subscription = await self.get_subscription(subscription_id)
        self.ensure_not_terminated(subscription)

        now = self.clock.now()
        updated = subscription.model_copy(deep=True)
        updated.cancelled_at = now
        updated.cancellation_reason = reason
        updated.ended_at = now
        self._transition(
            updated,
            SubscriptionStatus.EXPIRED if expire else SubscriptionStatus.CANCELLED,
            reason,
            initiated_by,
        )

        saved = await self.commit(updated)
        logger.info(f"Subscription {subscription_id} ended immediately as {saved.status.value}")
        await self._expire_entitlements(saved)
        await self.publisher.publish_cancelled(saved, immediate=True)
        return saved

    async def bulk_cancel(
        self,
        subscription_ids: List[str],
        reason: Optional[str] = None,
        expire: bool = False,
    ) -> Dict[str, str]:
        """Administrative bulk cancellation; one outcome per subscription id"""
        results: Dict[str, str] = {}
        for subscription_id in subscription_ids:
            try:
                saved = await self.cancel_immediately(subscription_id, reason=reason, expire=expire)
                results[subscription_id] = saved.status.value
            except SubscriptionNotFoundError:
                results[subscription_id] = "not_found"
            except SubscriptionTerminatedError:
                results[subscription_id] = "already_ended"
            except ConcurrentModificationError:
                results[subscription_id] = "conflict"
            except SubscriptionServiceError as e:
                logger.error(f"Bulk cancel failed for {subscription_id}: {e}")
                results[subscription_id] = "error"
        return results

    async def resume(self, subscription_id: str) -> Subscription:
        """Withdraw a pending cancellation while the period is still running"""
        subscription = await self.get_subscription(subscription_id)
        self.ensure_not_terminated(subscription)

        if not subscription.has_pending_cancellation:
            return subscription

        if subscription.current_period_end <= self.clock.now():
            logger.info(
                f"Subscription {subscription_id} period already ended; cancellation stands"
            )
            return subscription

        updated = subscription.model_copy(deep=True)
        updated.cancelled_at = None
        updated.cancellation_reason = None

        saved = await self.commit(updated)
        logger.info(f"Subscription {subscription_id} resumed")
        await self.publisher.publish_resumed(saved, reason="cancellation_withdrawn")
        return saved

    # ====================
    # Renewal and expiry
    # ====================

    async def renew(
        self,
        subscription_id: str,
        supersede_cancellation: bool = True,
    ) -> Subscription:
        """
        Extend the subscription by one full period.

        Only valid once the current period has ended, so repeated calls
        cannot stack extensions. A pending cancellation is cleared when
        supersede_cancellation is set; otherwise it is left to lapse and the
        subscription is returned unchanged.
        """
        subscription = await self.get_subscription(subscription_id)
        self.ensure_not_terminated(subscription)

        now = self.clock.now()
        if now < subscription.current_period_end:
            raise RenewalNotDueError(
                f"Subscription {subscription_id} is not due for renewal until "
                f"{subscription.current_period_end.isoformat()}"
            )

        if subscription.has_pending_cancellation and not supersede_cancellation:
            logger.info(f"Subscription {subscription_id} has a pending cancellation; letting it lapse")
            return subscription

        previous_end = subscription.current_period_end
        new_end = previous_end + timedelta(days=subscription.billing_cycle.period_days)

        updated = subscription.model_copy(deep=True)
        updated.current_period_start = previous_end
        updated.current_period_end = new_end
        updated.cancelled_at = None
        updated.cancellation_reason = None
        updated.period_extensions.append(PeriodExtension(
            previous_period_end=previous_end,
            new_period_end=new_end,
            extended_at=now,
            reason="renewal",
        ))
        if updated.status == SubscriptionStatus.PAST_DUE:
            self._transition(updated, SubscriptionStatus.ACTIVE, "renewed", InitiatedBy.SYSTEM)

        saved = await self.commit(updated)
        logger.info(f"Renewed subscription {subscription_id} until {new_end.isoformat()}")
        await self.publisher.publish_renewed(saved)
        return saved

    async def expire(self, subscription_id: str, reason: Optional[str] = None) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        return await self.expire_subscription(subscription, reason=reason)

    async def expire_subscription(
        self,
        subscription: Subscription,
        reason: Optional[str] = None,
        initiated_by: InitiatedBy = InitiatedBy.SYSTEM,
        cancellation_reason: Optional[str] = None,
    ) -> Subscription:
        """
        Terminal transition to expired; also expires the entitlement
        assignment. cancellation_reason, when given, stamps the
        cancellation markers in the same write.
        """
        self.ensure_not_terminated(subscription)

        now = self.clock.now()
        updated = subscription.model_copy(deep=True)
        updated.ended_at = now
        if cancellation_reason is not None:
            updated.cancelled_at = now
            updated.cancellation_reason = cancellation_reason
        self._transition(updated, SubscriptionStatus.EXPIRED, reason or cancellation_reason, initiated_by)

        saved = await self.commit(updated)
        logger.info(f"Subscription {saved.subscription_id} expired")
        await self._expire_entitlements(saved)
        await self.publisher.publish_expired(saved)
        return saved

    async def _expire_entitlements(self, subscription: Subscription) -> None:
        if not self.entitlements:
            return
        ok = await self.entitlements.expire_assignment(subscription.package_assignment_id)
        if not ok:
            logger.warning(
                f"Entitlement expiry failed for assignment {subscription.package_assignment_id} "
                f"(subscription {subscription.subscription_id})"
            )

    # ====================
    # Pausing
    # ====================

    async def pause(
        self,
        subscription_id: str,
        force: bool = False,
        initiated_by: InitiatedBy = InitiatedBy.USER,
    ) -> Subscription:
        """
        Voluntary pause.

        Forced pauses skip the pause ceiling but are still counted.

        Raises:
            PausingDisabledError: pausing is switched off
            PauseLimitExceededError: ceiling reached and not forced
        """
        subscription = await self.get_subscription(subscription_id)
        self.ensure_not_terminated(subscription)

        if subscription.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionValidationError(
                f"Only active subscriptions can be paused (status: {subscription.status.value})"
            )

        if not self.config.allow_pause:
            raise PausingDisabledError("Subscription pausing is not enabled")

        if not force and not self.pause_guard.can_pause(subscription):
            raise PauseLimitExceededError(subscription_id, self.pause_guard.max_pause_cycles)

        updated = subscription.model_copy(deep=True)
        updated.paused_at = self.clock.now()
        updated.pause_count = subscription.pause_count + 1
        self._transition(
            updated,
            SubscriptionStatus.PAUSED,
            "forced pause" if force else "paused",
            initiated_by,
        )

        saved = await self.commit(updated)
        logger.info(
            f"Subscription {subscription_id} paused (pause_count={saved.pause_count}, forced={force})"
        )
        await self.publisher.publish_paused(saved, forced=force)
        return saved

    async def unpause(
        self,
        subscription_id: str,
        initiated_by: InitiatedBy = InitiatedBy.USER,
    ) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        return await self.unpause_subscription(subscription, reason="unpaused", initiated_by=initiated_by)

    async def unpause_subscription(
        self,
        subscription: Subscription,
        reason: Optional[str] = None,
        initiated_by: InitiatedBy = InitiatedBy.USER,
    ) -> Subscription:
        """paused -> active; any other status is returned unchanged"""
        self.ensure_not_terminated(subscription)
        if subscription.status != SubscriptionStatus.PAUSED:
            return subscription

        updated = subscription.model_copy(deep=True)
        updated.paused_at = None
        updated.suspended_at = None
        self._transition(updated, SubscriptionStatus.ACTIVE, reason, initiated_by)

        saved = await self.commit(updated)
        logger.info(f"Subscription {saved.subscription_id} unpaused")
        await self.publisher.publish_resumed(saved, reason=reason)
        return saved

    async def get_pause_status(self, subscription_id: str) -> PauseStatus:
        subscription = await self.get_subscription(subscription_id)
        return self.pause_guard.status(subscription)

    # ====================
    # Dunning transitions
    # ====================

    async def mark_past_due(self, subscription: Subscription, reason: str = "payment_failed") -> Subscription:
        """Move a live subscription to past_due; paused ones stay paused"""
        self.ensure_not_terminated(subscription)
        if subscription.status in (SubscriptionStatus.PAUSED, SubscriptionStatus.PAST_DUE):
            return subscription

        updated = subscription.model_copy(deep=True)
        self._transition(updated, SubscriptionStatus.PAST_DUE, reason, InitiatedBy.PAYMENT_PROVIDER)
        return await self.commit(updated)

    async def reactivate(self, subscription: Subscription, reason: str = "payment_recovered") -> Subscription:
        """past_due -> active"""
        self.ensure_not_terminated(subscription)
        if subscription.status != SubscriptionStatus.PAST_DUE:
            return subscription

        updated = subscription.model_copy(deep=True)
        self._transition(updated, SubscriptionStatus.ACTIVE, reason, InitiatedBy.PAYMENT_PROVIDER)
        return await self.commit(updated)

    async def pause_for_non_payment(self, subscription: Subscription) -> Subscription:
        """Involuntary pause; pause_count and the pause ceiling are untouched"""
        self.ensure_not_terminated(subscription)

        updated = subscription.model_copy(deep=True)
        updated.paused_at = self.clock.now()
        self._transition(updated, SubscriptionStatus.PAUSED, "non_payment", InitiatedBy.DUNNING)

        saved = await self.commit(updated)
        await self.publisher.publish_paused(saved, forced=True, involuntary=True)
        return saved

    # ====================
    # Sweep queries
    # ====================

    async def get_expiring_soon(self, days: int = 7) -> List[Subscription]:
        """Active, uncancelled subscriptions whose period ends within days"""
        now = self.clock.now()
        return await self.repository.find_expiring_between(now, now + timedelta(days=days))

    async def get_expired_cancellations(self) -> List[Subscription]:
        """Subscriptions cancelled at period end whose period has now ended"""
        return await self.repository.find_cancelled_ended_before(self.clock.now())


__all__ = ["SubscriptionLifecycleService"]
