"""
Dunning Service

Failed payment recovery.

Flow:
1. Payment fails -> invoice marked overdue, subscription marked past_due
2. Retries scheduled from the configured schedule (1, 3, 7 days by default)
3. Retries exhausted -> subscription paused (involuntary, not counted)
4. After suspend_after_days paused -> entitlement assignment suspended
5. After cancel_after_days paused -> subscription cancelled for non-payment

Every transition re-checks its predicate on the row it was handed and writes
with a version compare-and-set; a losing writer logs and skips.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.config import DunningConfig

from .models import (
    AssignmentStatus,
    DunningAction,
    DunningStage,
    DunningStatus,
    InitiatedBy,
    Invoice,
    InvoiceStatus,
    NotificationType,
    Subscription,
    SubscriptionStatus,
)
from .protocols import (
    ConcurrentModificationError,
    EntitlementServiceProtocol,
    InvoiceNotFoundError,
    InvoiceRepositoryProtocol,
    NotificationDispatcherProtocol,
    PaymentGatewayProtocol,
    SubscriptionServiceError,
    SubscriptionTerminatedError,
)
from .subscription_service import SubscriptionLifecycleService

logger = logging.getLogger(__name__)


class DunningService:
    """Drives invoices and subscriptions through retry, pause, suspend and cancel"""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycleService,
        invoices: InvoiceRepositoryProtocol,
        entitlements: Optional[EntitlementServiceProtocol] = None,
        notifications: Optional[NotificationDispatcherProtocol] = None,
        payment_gateway: Optional[PaymentGatewayProtocol] = None,
        config: Optional[DunningConfig] = None,
    ):
        self.lifecycle = lifecycle
        self.subscriptions = lifecycle.repository
        self.invoices = invoices
        self.entitlements = entitlements
        self.notifications = notifications
        self.payment_gateway = payment_gateway
        self.config = config or DunningConfig()
        self.clock = lifecycle.clock
        self.publisher = lifecycle.publisher

    # ====================
    # Retry schedule
    # ====================

    def calculate_next_retry(self, attempt_index: int) -> Optional[datetime]:
        """Next retry after the given attempt, or None once the schedule is used up"""
        retry_days = self.config.retry_days
        if attempt_index < 0 or attempt_index >= len(retry_days):
            return None
        return self.clock.now() + timedelta(days=retry_days[attempt_index])

    def calculate_initial_retry(self) -> datetime:
        """First retry: the grace window never shortens the first scheduled delay"""
        first_retry_days = self.config.retry_days[0] if self.config.retry_days else 1
        hours = max(self.config.initial_grace_hours, first_retry_days * 24)
        return self.clock.now() + timedelta(hours=hours)

    # ====================
    # Payment signals
    # ====================

    async def _get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.invoices.get_invoice(invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def find_subscription_for_invoice(
        self, invoice: Invoice, subscription_id: Optional[str] = None
    ) -> Optional[Subscription]:
        subscription_id = subscription_id or invoice.subscription_id
        if subscription_id:
            return await self.subscriptions.get_subscription(subscription_id)
        if invoice.workspace_id:
            return await self.subscriptions.find_live_for_workspace(invoice.workspace_id)
        return None

    async def handle_payment_failure(
        self, invoice_id: str, subscription_id: Optional[str] = None
    ) -> Optional[Invoice]:
        """
        Record a failed charge.

        Returns the updated invoice, or None when another writer updated the
        invoice first.
        """
        invoice = await self._get_invoice(invoice_id)
        return await self._record_failed_attempt(invoice, subscription_id, NotificationType.PAYMENT_FAILED)

    async def _record_failed_attempt(
        self,
        invoice: Invoice,
        subscription_id: Optional[str],
        notification: NotificationType,
    ) -> Optional[Invoice]:
        if not invoice.is_outstanding:
            logger.warning(
                f"Ignoring payment failure for invoice {invoice.invoice_id} in status {invoice.status.value}"
            )
            return invoice

        now = self.clock.now()
        attempts = invoice.charge_attempts + 1
        next_retry = (
            self.calculate_initial_retry()
            if invoice.charge_attempts == 0
            else self.calculate_next_retry(attempts - 1)
        )

        updated = invoice.model_copy(deep=True)
        updated.status = InvoiceStatus.OVERDUE
        updated.charge_attempts = attempts
        updated.last_charge_attempt = now
        updated.next_charge_attempt = next_retry

        saved = await self.invoices.save_invoice(updated, expected_version=invoice.version)
        if saved is None:
            logger.info(f"Invoice {invoice.invoice_id} changed concurrently; skipping failure handling")
            return None

        subscription = await self.find_subscription_for_invoice(saved, subscription_id)
        if subscription and not subscription.is_terminal:
            try:
                subscription = await self.lifecycle.mark_past_due(subscription)
            except ConcurrentModificationError:
                logger.info(
                    f"Subscription {subscription.subscription_id} changed concurrently; "
                    f"leaving status for the next signal"
                )

        if subscription:
            context = {
                "invoice_id": saved.invoice_id,
                "amount_due": str(saved.amount_due),
                "currency": saved.currency,
                "attempt": attempts,
                "max_retries": self.config.max_retries,
                "next_charge_attempt": next_retry.isoformat() if next_retry else None,
            }
            await self._notify(notification, subscription, context)
            await self.publisher.publish_payment_failed(subscription, saved.invoice_id, attempts, next_retry)

        logger.info(
            f"Payment failure handled for invoice {saved.invoice_id} "
            f"(attempt {attempts}, next retry {next_retry.isoformat() if next_retry else 'none'})"
        )
        return saved

    async def handle_payment_recovery(
        self, invoice_id: str, subscription_id: Optional[str] = None
    ) -> Optional[Invoice]:
        """Clear dunning state and bring the subscription back to active"""
        invoice = await self._get_invoice(invoice_id)

        updated = invoice.model_copy(deep=True)
        updated.next_charge_attempt = None
        if invoice.is_outstanding:
            updated.status = InvoiceStatus.PAID
            updated.paid_at = self.clock.now()

        saved = await self.invoices.save_invoice(updated, expected_version=invoice.version)
        if saved is None:
            logger.info(f"Invoice {invoice_id} changed concurrently; skipping recovery handling")
            return None

        subscription = await self.find_subscription_for_invoice(saved, subscription_id)
        if subscription and not subscription.is_terminal:
            try:
                if subscription.is_paused:
                    subscription = await self.lifecycle.unpause_subscription(
                        subscription, reason="dunning_recovery", initiated_by=InitiatedBy.PAYMENT_PROVIDER
                    )
                    if self.entitlements:
                        await self.entitlements.reactivate_assignment(
                            subscription.package_assignment_id, "dunning_recovery"
                        )
                elif subscription.is_past_due:
                    subscription = await self.lifecycle.reactivate(subscription)
            except ConcurrentModificationError:
                logger.info(
                    f"Subscription {subscription.subscription_id} changed concurrently during recovery"
                )
            await self.publisher.publish_payment_recovered(subscription, saved.invoice_id)

        logger.info(f"Payment recovery handled for invoice {invoice_id}")
        return saved

    async def get_invoices_due_for_retry(self) -> List[Invoice]:
        return await self.invoices.find_due_for_retry(self.clock.now())

    async def retry_payment(self, invoice_id: str) -> bool:
        """
        Ask the payment gateway to charge the invoice again.

        Returns True when the charge succeeded. A gateway error leaves the
        invoice untouched so the next sweep tries again.
        """
        if self.payment_gateway is None:
            raise SubscriptionServiceError("No payment gateway configured")

        invoice = await self._get_invoice(invoice_id)
        try:
            success = await self.payment_gateway.retry_invoice_payment(invoice)
        except Exception as e:
            logger.error(f"Payment retry exception for invoice {invoice_id}: {e}", exc_info=True)
            return False

        if success:
            await self.handle_payment_recovery(invoice_id)
            return True

        await self._record_failed_attempt(invoice, None, NotificationType.PAYMENT_RETRY)
        return False

    # ====================
    # Escalation
    # ====================

    async def get_subscriptions_for_pause(self) -> List[Subscription]:
        """past_due subscriptions whose overdue invoice has run out of retries"""
        cutoff = self.clock.now() - timedelta(days=self.config.pause_after_days)
        result = []
        for subscription in await self.subscriptions.find_past_due():
            exhausted = await self.invoices.find_exhausted_for_workspace(subscription.workspace_id, cutoff)
            if exhausted:
                result.append(subscription)
        return result

    async def pause_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Involuntary pause for non-payment"""
        if subscription.is_terminal or subscription.status != SubscriptionStatus.PAST_DUE:
            logger.info(f"Subscription {subscription.subscription_id} no longer past_due; skipping pause")
            return None

        try:
            saved = await self.lifecycle.pause_for_non_payment(subscription)
        except (ConcurrentModificationError, SubscriptionTerminatedError) as e:
            logger.info(f"Skipping dunning pause for {subscription.subscription_id}: {e}")
            return None

        await self._notify(NotificationType.SUBSCRIPTION_PAUSED, saved)
        logger.info(
            f"Subscription {saved.subscription_id} paused due to dunning (workspace {saved.workspace_id})"
        )
        return saved

    async def get_subscriptions_for_suspension(self) -> List[Subscription]:
        """Paused past suspend_after_days and not yet suspended"""
        cutoff = self.clock.now() - timedelta(days=self.config.suspend_after_days)
        result = []
        for subscription in await self.subscriptions.find_paused_before(cutoff):
            if subscription.suspended_at is not None:
                continue
            if self.entitlements:
                assignment = await self.entitlements.get_assignment(subscription.package_assignment_id)
                if assignment and assignment.status == AssignmentStatus.SUSPENDED:
                    continue
            result.append(subscription)
        return result

    async def suspend_workspace(self, subscription: Subscription) -> bool:
        """
        Suspend the entitlement assignment. The subscription stays paused;
        suspended_at records that the suspension happened so it is done once.
        """
        if subscription.is_terminal or not subscription.is_paused:
            logger.info(f"Subscription {subscription.subscription_id} no longer paused; skipping suspension")
            return False
        if subscription.suspended_at is not None:
            logger.info(f"Subscription {subscription.subscription_id} already suspended; skipping")
            return False

        if self.entitlements is None:
            raise SubscriptionServiceError("No entitlement service configured")

        # Claim the row with the marker so any other reader skips it
        claim = subscription.model_copy(deep=True)
        claim.suspended_at = self.clock.now()
        try:
            claimed = await self.lifecycle.commit(claim)
        except ConcurrentModificationError:
            logger.info(f"Subscription {subscription.subscription_id} changed concurrently; skipping suspension")
            return False

        try:
            suspended = await self.entitlements.suspend_assignment(claimed.package_assignment_id, "dunning")
        except Exception:
            await self._release_suspension_claim(claimed)
            raise

        if not suspended:
            logger.warning(
                f"Entitlement suspension failed for assignment {claimed.package_assignment_id}"
            )
            await self._release_suspension_claim(claimed)
            return False

        await self._notify(NotificationType.ACCOUNT_SUSPENDED, claimed)
        await self.publisher.publish_suspended(claimed)
        logger.info(
            f"Workspace {claimed.workspace_id} suspended due to dunning (subscription {claimed.subscription_id})"
        )
        return True

    async def _release_suspension_claim(self, claimed: Subscription) -> None:
        """Clear suspended_at so the next sweep tries again"""
        release = claimed.model_copy(deep=True)
        release.suspended_at = None
        try:
            await self.lifecycle.commit(release)
        except ConcurrentModificationError:
            logger.info(f"Subscription {claimed.subscription_id} changed concurrently; suspension claim left in place")

    async def get_subscriptions_for_cancellation(self) -> List[Subscription]:
        cutoff = self.clock.now() - timedelta(days=self.config.cancel_after_days)
        return await self.subscriptions.find_paused_before(cutoff)

    async def cancel_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        """Terminal cancellation for non-payment; ends as expired"""
        if subscription.is_terminal or not subscription.is_paused:
            logger.info(f"Subscription {subscription.subscription_id} no longer paused; skipping cancellation")
            return None

        try:
            saved = await self.lifecycle.expire_subscription(
                subscription,
                initiated_by=InitiatedBy.DUNNING,
                cancellation_reason="Non-payment",
            )
        except (ConcurrentModificationError, SubscriptionTerminatedError) as e:
            logger.info(f"Skipping dunning cancellation for {subscription.subscription_id}: {e}")
            return None

        await self._notify(NotificationType.SUBSCRIPTION_CANCELLED, saved)
        logger.info(
            f"Subscription {saved.subscription_id} cancelled due to non-payment (workspace {saved.workspace_id})"
        )
        return saved

    # ====================
    # Reporting
    # ====================

    async def get_dunning_status(self, subscription: Subscription) -> DunningStatus:
        """Read-only projection of where the subscription sits in dunning"""
        invoice = await self.invoices.find_oldest_outstanding_for_workspace(subscription.workspace_id)
        if invoice is None:
            return DunningStatus()

        now = self.clock.now()
        days_overdue = max(0, (now - invoice.due_date).days) if invoice.due_date else 0

        if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            if invoice.next_charge_attempt:
                return DunningStatus(
                    stage=DunningStage.RETRY,
                    days_overdue=days_overdue,
                    next_action=DunningAction.RETRY,
                    next_action_date=invoice.next_charge_attempt,
                )
            pause_date = None
            if invoice.last_charge_attempt:
                pause_date = invoice.last_charge_attempt + timedelta(days=self.config.pause_after_days)
            return DunningStatus(
                stage=DunningStage.RETRY,
                days_overdue=days_overdue,
                next_action=DunningAction.PAUSE,
                next_action_date=pause_date,
            )

        if subscription.status == SubscriptionStatus.PAUSED:
            paused_days = (now - subscription.paused_at).days if subscription.paused_at else 0
            if paused_days < self.config.suspend_after_days:
                return DunningStatus(
                    stage=DunningStage.PAUSED,
                    days_overdue=days_overdue,
                    next_action=DunningAction.SUSPEND,
                    next_action_date=(
                        subscription.paused_at + timedelta(days=self.config.suspend_after_days)
                        if subscription.paused_at else None
                    ),
                )
            return DunningStatus(
                stage=DunningStage.SUSPENDED,
                days_overdue=days_overdue,
                next_action=DunningAction.CANCEL,
                next_action_date=(
                    subscription.paused_at + timedelta(days=self.config.cancel_after_days)
                    if subscription.paused_at else None
                ),
            )

        return DunningStatus(
            stage=DunningStage.CANCELLED,
            days_overdue=days_overdue,
            next_action=DunningAction.NONE,
        )

    # ====================
    # Notifications
    # ====================

    async def _notify(
        self,
        notification: NotificationType,
        subscription: Subscription,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.config.send_notifications or self.notifications is None:
            return
        try:
            sent = await self.notifications.dispatch(notification, subscription, context or {})
            if not sent:
                logger.warning(
                    f"Notification {notification.value} not delivered for subscription {subscription.subscription_id}"
                )
        except Exception as e:
            logger.error(
                f"Failed to dispatch {notification.value} for subscription {subscription.subscription_id}: {e}",
                exc_info=True,
            )


__all__ = ["DunningService"]
