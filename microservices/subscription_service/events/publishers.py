"""
Subscription Event Publishers

Publishes subscription lifecycle events to the event bus.
"""

import logging
from typing import Optional, Dict, Any

from core.nats_client import Event, EventType, ServiceSource

from ..models import Subscription
from .models import SubscriptionEvent, SubscriptionEventType

logger = logging.getLogger(__name__)


class SubscriptionEventPublisher:
    """Publisher for subscription events"""

    def __init__(self, event_bus=None):
        self.event_bus = event_bus

    async def publish_created(self, subscription: Subscription) -> bool:
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_CREATED,
            subscription,
            {
                "package_code": subscription.package_code,
                "package_assignment_id": subscription.package_assignment_id,
                "billing_cycle": subscription.billing_cycle.value,
                "current_period_end": subscription.current_period_end.isoformat(),
                "gateway": subscription.gateway,
            },
        )

    async def publish_renewed(self, subscription: Subscription) -> bool:
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_RENEWED,
            subscription,
            {
                "current_period_start": subscription.current_period_start.isoformat(),
                "current_period_end": subscription.current_period_end.isoformat(),
                "billing_cycle": subscription.billing_cycle.value,
            },
        )

    async def publish_paused(self, subscription: Subscription, forced: bool, involuntary: bool = False) -> bool:
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_PAUSED,
            subscription,
            {
                "pause_count": subscription.pause_count,
                "forced": forced,
                "involuntary": involuntary,
            },
        )

    async def publish_resumed(self, subscription: Subscription, reason: Optional[str] = None) -> bool:
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_RESUMED,
            subscription,
            {"reason": reason},
        )

    async def publish_suspended(self, subscription: Subscription) -> bool:
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_SUSPENDED,
            subscription,
            {"package_assignment_id": subscription.package_assignment_id},
        )

    async def publish_cancelled(self, subscription: Subscription, immediate: bool) -> bool:
        effective = subscription.ended_at if immediate else subscription.current_period_end
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_CANCELED,
            subscription,
            {
                "immediate": immediate,
                "reason": subscription.cancellation_reason,
                "effective_date": effective.isoformat() if effective else None,
            },
        )

    async def publish_expired(self, subscription: Subscription) -> bool:
        return await self._publish_event(
            SubscriptionEventType.SUBSCRIPTION_EXPIRED,
            subscription,
            {
                "ended_at": subscription.ended_at.isoformat() if subscription.ended_at else None,
                "reason": subscription.cancellation_reason,
            },
        )

    async def publish_plan_changed(
        self,
        subscription: Subscription,
        from_package_code: Optional[str],
        proration: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self._publish_event(
            SubscriptionEventType.PLAN_CHANGED,
            subscription,
            {
                "from_package_code": from_package_code,
                "to_package_code": subscription.package_code,
                "package_assignment_id": subscription.package_assignment_id,
                "proration": proration,
            },
        )

    async def publish_plan_change_scheduled(self, subscription: Subscription) -> bool:
        pending = subscription.pending_plan_change
        return await self._publish_event(
            SubscriptionEventType.PLAN_CHANGE_SCHEDULED,
            subscription,
            {
                "to_package_code": pending.to_package_code if pending else None,
                "scheduled_for": pending.scheduled_for.isoformat() if pending else None,
            },
        )

    async def publish_payment_failed(
        self,
        subscription: Subscription,
        invoice_id: str,
        charge_attempts: int,
        next_charge_attempt=None,
    ) -> bool:
        return await self._publish_event(
            SubscriptionEventType.PAYMENT_FAILED,
            subscription,
            {
                "invoice_id": invoice_id,
                "charge_attempts": charge_attempts,
                "next_charge_attempt": next_charge_attempt.isoformat() if next_charge_attempt else None,
            },
        )

    async def publish_payment_recovered(self, subscription: Subscription, invoice_id: str) -> bool:
        return await self._publish_event(
            SubscriptionEventType.PAYMENT_RECOVERED,
            subscription,
            {"invoice_id": invoice_id},
        )

    async def _publish_event(
        self,
        event_type: SubscriptionEventType,
        subscription: Subscription,
        data: Dict[str, Any],
    ) -> bool:
        """Internal method to publish events"""
        if not self.event_bus:
            logger.debug(f"Event bus not available, {event_type.value} not published")
            return False

        try:
            payload = SubscriptionEvent(
                subscription_id=subscription.subscription_id,
                workspace_id=subscription.workspace_id,
                status=subscription.status.value,
                timestamp=subscription.updated_at or subscription.created_at or subscription.current_period_start,
                data=data,
            )
            event = Event(
                event_type=EventType(event_type.value),
                source=ServiceSource.SUBSCRIPTION_SERVICE,
                data=payload.model_dump(mode="json"),
                subject=subscription.subscription_id,
            )
            await self.event_bus.publish_event(event)
            logger.debug(f"Published event: {event_type.value}")
            return True

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False


__all__ = ["SubscriptionEventPublisher"]
