"""
Dunning - Component Tests

Tests for:
- Payment failure and recovery signals
- Retry scheduling and gateway retries
- Escalation: pause, suspend, cancel
- Dunning status projection
- Lost races skip without side effects
"""

from datetime import timedelta

import httpx
import pytest

from core.config import DunningConfig
from microservices.subscription_service.models import (
    AssignmentStatus,
    DunningAction,
    DunningStage,
    InitiatedBy,
    InvoiceStatus,
    NotificationType,
    SubscriptionStatus,
)
from microservices.subscription_service.protocols import InvoiceNotFoundError


@pytest.fixture
def billed(seed, mock_invoices, data_factory, clock):
    """Active subscription with an unpaid invoice due now"""

    def _billed(**kwargs):
        subscription = seed(**kwargs)
        invoice = mock_invoices.add_invoice(data_factory.make_invoice(
            subscription.workspace_id, clock.now(), subscription_id=subscription.subscription_id
        ))
        return subscription, invoice

    return _billed


async def exhaust_retries(dunning, clock, invoice_id):
    """Initial failure plus every scheduled retry declined"""
    await dunning.handle_payment_failure(invoice_id)
    for days in dunning.config.retry_days:
        clock.advance(days=days)
        assert await dunning.retry_payment(invoice_id) is False


@pytest.mark.component
@pytest.mark.asyncio
class TestPaymentSignals:

    async def test_failure_marks_past_due_and_schedules_retry(
        self, dunning, billed, clock, mock_repository, mock_invoices, mock_notifications, mock_event_bus
    ):
        subscription, invoice = billed()

        saved = await dunning.handle_payment_failure(invoice.invoice_id)

        assert saved.status == InvoiceStatus.OVERDUE
        assert saved.charge_attempts == 1
        assert saved.last_charge_attempt == clock.now()
        assert saved.next_charge_attempt == clock.now() + timedelta(days=1)
        stored = mock_repository.stored(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.status_history[-1].initiated_by == InitiatedBy.PAYMENT_PROVIDER

        failed = mock_notifications.of_type(NotificationType.PAYMENT_FAILED)
        assert len(failed) == 1
        assert failed[0]["context"]["max_retries"] == 3
        assert len(mock_event_bus.get_events_by_type("subscription.payment.failed")) == 1

    async def test_recovery_clears_retry_and_reactivates(self, dunning, billed, mock_repository, mock_invoices, clock):
        subscription, invoice = billed()
        await dunning.handle_payment_failure(invoice.invoice_id)

        recovered = await dunning.handle_payment_recovery(invoice.invoice_id)

        assert recovered.next_charge_attempt is None
        assert recovered.status == InvoiceStatus.PAID
        assert recovered.paid_at == clock.now()
        assert mock_repository.stored(subscription.subscription_id).status == SubscriptionStatus.ACTIVE

    async def test_recovery_unpauses_and_reactivates_assignment(
        self, dunning, billed, mock_repository, mock_entitlements
    ):
        subscription, invoice = billed(status=SubscriptionStatus.PAUSED)
        mock_entitlements.assignments[subscription.package_assignment_id] = (
            mock_entitlements.assignments[subscription.package_assignment_id]
            .model_copy(update={"status": AssignmentStatus.SUSPENDED})
        )

        await dunning.handle_payment_recovery(invoice.invoice_id)

        assert mock_repository.stored(subscription.subscription_id).status == SubscriptionStatus.ACTIVE
        assert mock_entitlements.assignments[subscription.package_assignment_id].status == AssignmentStatus.ACTIVE

    async def test_failure_resolves_subscription_by_workspace(self, dunning, seed, mock_invoices, data_factory, clock, mock_repository):
        subscription = seed()
        invoice = mock_invoices.add_invoice(data_factory.make_invoice(subscription.workspace_id, clock.now()))

        await dunning.handle_payment_failure(invoice.invoice_id)

        assert mock_repository.stored(subscription.subscription_id).status == SubscriptionStatus.PAST_DUE

    async def test_failure_keeps_paused_subscription_paused(self, dunning, billed, mock_repository):
        subscription, invoice = billed(status=SubscriptionStatus.PAUSED)

        await dunning.handle_payment_failure(invoice.invoice_id)

        assert mock_repository.stored(subscription.subscription_id).status == SubscriptionStatus.PAUSED

    async def test_unknown_invoice(self, dunning):
        with pytest.raises(InvoiceNotFoundError):
            await dunning.handle_payment_failure("inv_missing")

    async def test_lost_invoice_race_skips(self, dunning, billed, mock_invoices, mock_notifications):
        subscription, invoice = billed()
        original_get = mock_invoices.get_invoice

        async def get_then_conflict(invoice_id):
            current = await original_get(invoice_id)
            mock_invoices.simulate_concurrent_write(invoice_id)
            return current

        mock_invoices.get_invoice = get_then_conflict

        assert await dunning.handle_payment_failure(invoice.invoice_id) is None
        assert mock_notifications.sent == []

    async def test_notifications_can_be_disabled(
        self, lifecycle, mock_invoices, mock_entitlements, mock_notifications, mock_gateway, billed
    ):
        from microservices.subscription_service.dunning_service import DunningService

        quiet = DunningService(
            lifecycle, mock_invoices, mock_entitlements, mock_notifications, mock_gateway,
            DunningConfig(send_notifications=False),
        )
        _, invoice = billed()

        await quiet.handle_payment_failure(invoice.invoice_id)

        mock_notifications.dispatch.assert_not_called()


@pytest.mark.component
@pytest.mark.asyncio
class TestRetries:

    async def test_retry_schedule(self, dunning, clock):
        now = clock.now()

        assert dunning.calculate_next_retry(0) == now + timedelta(days=1)
        assert dunning.calculate_next_retry(1) == now + timedelta(days=3)
        assert dunning.calculate_next_retry(2) == now + timedelta(days=7)
        assert dunning.calculate_next_retry(3) is None

    async def test_initial_retry_uses_longer_of_grace_and_first_delay(self, lifecycle, mock_invoices, clock):
        from microservices.subscription_service.dunning_service import DunningService

        long_grace = DunningService(lifecycle, mock_invoices, config=DunningConfig(initial_grace_hours=72))

        assert long_grace.calculate_initial_retry() == clock.now() + timedelta(hours=72)

    async def test_declined_retry_schedules_next(self, dunning, billed, clock, mock_invoices, mock_notifications):
        _, invoice = billed()
        await dunning.handle_payment_failure(invoice.invoice_id)
        clock.advance(days=1)

        due = await dunning.get_invoices_due_for_retry()
        assert [i.invoice_id for i in due] == [invoice.invoice_id]

        assert await dunning.retry_payment(invoice.invoice_id) is False

        stored = mock_invoices.stored(invoice.invoice_id)
        assert stored.charge_attempts == 2
        assert stored.next_charge_attempt == clock.now() + timedelta(days=3)
        retry_notice = mock_notifications.of_type(NotificationType.PAYMENT_RETRY)
        assert retry_notice[0]["context"]["attempt"] == 2

    async def test_successful_retry_recovers(self, dunning, billed, clock, mock_gateway, mock_repository):
        subscription, invoice = billed()
        await dunning.handle_payment_failure(invoice.invoice_id)
        mock_gateway.results = [True]
        clock.advance(days=1)

        assert await dunning.retry_payment(invoice.invoice_id) is True
        assert mock_repository.stored(subscription.subscription_id).status == SubscriptionStatus.ACTIVE

    async def test_gateway_error_leaves_invoice_untouched(self, dunning, billed, clock, mock_gateway, mock_invoices):
        _, invoice = billed()
        await dunning.handle_payment_failure(invoice.invoice_id)
        before = mock_invoices.stored(invoice.invoice_id)
        mock_gateway.results = [httpx.ConnectError("payment service down")]

        assert await dunning.retry_payment(invoice.invoice_id) is False
        assert mock_invoices.stored(invoice.invoice_id) == before

    async def test_last_retry_exhausts_schedule(self, dunning, billed, clock, mock_invoices):
        _, invoice = billed()

        await exhaust_retries(dunning, clock, invoice.invoice_id)

        stored = mock_invoices.stored(invoice.invoice_id)
        assert stored.charge_attempts == 4
        assert stored.next_charge_attempt is None
        assert await dunning.get_invoices_due_for_retry() == []


@pytest.mark.component
@pytest.mark.asyncio
class TestEscalation:

    async def test_full_escalation_to_cancellation(
        self, dunning, billed, clock, mock_repository, mock_entitlements, mock_notifications
    ):
        subscription, invoice = billed()
        sub_id = subscription.subscription_id
        await exhaust_retries(dunning, clock, invoice.invoice_id)

        # Not yet: pause waits pause_after_days after the last attempt
        clock.advance(days=dunning.config.pause_after_days - 1)
        assert await dunning.get_subscriptions_for_pause() == []
        clock.advance(days=1)

        candidates = await dunning.get_subscriptions_for_pause()
        assert [s.subscription_id for s in candidates] == [sub_id]
        paused = await dunning.pause_subscription(candidates[0])
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.pause_count == 0
        assert paused.status_history[-1].initiated_by == InitiatedBy.DUNNING

        clock.advance(days=dunning.config.suspend_after_days)
        candidates = await dunning.get_subscriptions_for_suspension()
        assert [s.subscription_id for s in candidates] == [sub_id]
        assert await dunning.suspend_workspace(candidates[0]) is True
        assert mock_entitlements.assignments[subscription.package_assignment_id].status == AssignmentStatus.SUSPENDED
        assert mock_repository.stored(sub_id).status == SubscriptionStatus.PAUSED
        assert await dunning.get_subscriptions_for_suspension() == []

        clock.advance(days=dunning.config.cancel_after_days - dunning.config.suspend_after_days)
        candidates = await dunning.get_subscriptions_for_cancellation()
        assert [s.subscription_id for s in candidates] == [sub_id]
        cancelled = await dunning.cancel_subscription(candidates[0])

        assert cancelled.status == SubscriptionStatus.EXPIRED
        assert cancelled.ended_at == clock.now()
        assert cancelled.cancellation_reason == "Non-payment"
        assert cancelled.is_terminal
        sent = [n["notification"] for n in mock_notifications.sent]
        assert NotificationType.SUBSCRIPTION_PAUSED in sent
        assert NotificationType.ACCOUNT_SUSPENDED in sent
        assert NotificationType.SUBSCRIPTION_CANCELLED in sent

    async def test_stale_pause_loses_race(self, dunning, billed, clock, mock_repository, mock_notifications):
        subscription, invoice = billed()
        await exhaust_retries(dunning, clock, invoice.invoice_id)
        clock.advance(days=dunning.config.pause_after_days)
        candidate = (await dunning.get_subscriptions_for_pause())[0]
        mock_repository.simulate_concurrent_write(subscription.subscription_id)
        mock_notifications.sent.clear()

        assert await dunning.pause_subscription(candidate) is None
        assert mock_repository.stored(subscription.subscription_id).status == SubscriptionStatus.PAST_DUE
        assert mock_notifications.sent == []

    async def test_suspension_happens_once_across_fresh_reads(
        self, dunning, seed, clock, mock_repository, mock_entitlements, mock_notifications
    ):
        subscription = seed(status=SubscriptionStatus.PAUSED, paused_at=clock.now() - timedelta(days=15))
        sub_id = subscription.subscription_id

        assert await dunning.suspend_workspace(mock_repository.stored(sub_id)) is True
        assert await dunning.suspend_workspace(mock_repository.stored(sub_id)) is False

        assert mock_repository.stored(sub_id).suspended_at == clock.now()
        assert len(mock_notifications.of_type(NotificationType.ACCOUNT_SUSPENDED)) == 1
        mock_entitlements.suspend_assignment.assert_awaited_once()

    async def test_unreadable_assignment_does_not_repeat_suspension(
        self, dunning, seed, clock, mock_repository, mock_entitlements, mock_notifications
    ):
        seed(status=SubscriptionStatus.PAUSED, paused_at=clock.now() - timedelta(days=15))
        mock_entitlements.get_assignment.side_effect = None
        mock_entitlements.get_assignment.return_value = None

        for _ in range(2):
            for candidate in await dunning.get_subscriptions_for_suspension():
                await dunning.suspend_workspace(candidate)

        assert len(mock_notifications.of_type(NotificationType.ACCOUNT_SUSPENDED)) == 1

    async def test_failed_entitlement_suspension_releases_claim(
        self, dunning, seed, clock, mock_repository, mock_entitlements, mock_notifications
    ):
        subscription = seed(status=SubscriptionStatus.PAUSED, paused_at=clock.now() - timedelta(days=15))
        mock_entitlements.suspend_assignment.side_effect = None
        mock_entitlements.suspend_assignment.return_value = False

        assert await dunning.suspend_workspace(subscription) is False

        assert mock_repository.stored(subscription.subscription_id).suspended_at is None
        assert mock_notifications.of_type(NotificationType.ACCOUNT_SUSPENDED) == []
        assert len(await dunning.get_subscriptions_for_suspension()) == 1

    async def test_recovery_clears_suspension_marker(self, dunning, billed, clock, mock_repository):
        subscription, invoice = billed(status=SubscriptionStatus.PAUSED, paused_at=clock.now() - timedelta(days=15))
        await dunning.suspend_workspace(mock_repository.stored(subscription.subscription_id))

        await dunning.handle_payment_recovery(invoice.invoice_id)

        stored = mock_repository.stored(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.suspended_at is None

    async def test_pause_skips_subscription_no_longer_past_due(self, dunning, seed):
        subscription = seed()

        assert await dunning.pause_subscription(subscription) is None

    async def test_cancel_skips_terminal_subscription(self, dunning, lifecycle, seed):
        subscription = seed(status=SubscriptionStatus.PAUSED)
        ended = await lifecycle.cancel_immediately(subscription.subscription_id)

        assert await dunning.cancel_subscription(ended) is None


@pytest.mark.component
@pytest.mark.asyncio
class TestDunningStatus:

    async def test_no_outstanding_invoice(self, dunning, seed):
        status = await dunning.get_dunning_status(seed())

        assert status.stage == DunningStage.NONE
        assert status.next_action == DunningAction.NONE

    async def test_retry_stage(self, dunning, billed, clock, mock_repository):
        subscription, invoice = billed()
        await dunning.handle_payment_failure(invoice.invoice_id)
        clock.advance(days=2)

        status = await dunning.get_dunning_status(mock_repository.stored(subscription.subscription_id))

        assert status.stage == DunningStage.RETRY
        assert status.next_action == DunningAction.RETRY
        assert status.days_overdue == 2

    async def test_exhausted_retries_point_at_pause(self, dunning, billed, clock, mock_repository):
        subscription, invoice = billed()
        await exhaust_retries(dunning, clock, invoice.invoice_id)

        status = await dunning.get_dunning_status(mock_repository.stored(subscription.subscription_id))

        assert status.stage == DunningStage.RETRY
        assert status.next_action == DunningAction.PAUSE
        assert status.next_action_date == clock.now() + timedelta(days=dunning.config.pause_after_days)

    async def test_paused_then_suspended(self, dunning, billed, clock):
        subscription, _ = billed(status=SubscriptionStatus.PAUSED, paused_at=clock.now())

        status = await dunning.get_dunning_status(subscription)
        assert status.stage == DunningStage.PAUSED
        assert status.next_action == DunningAction.SUSPEND
        assert status.next_action_date == clock.now() + timedelta(days=14)

        clock.advance(days=14)
        status = await dunning.get_dunning_status(subscription)
        assert status.stage == DunningStage.SUSPENDED
        assert status.next_action == DunningAction.CANCEL
        assert status.next_action_date == subscription.paused_at + timedelta(days=30)

    async def test_ended_subscription_reports_cancelled(self, dunning, billed, clock):
        subscription, _ = billed(status=SubscriptionStatus.EXPIRED, ended_at=clock.now())

        status = await dunning.get_dunning_status(subscription)

        assert status.stage == DunningStage.CANCELLED
        assert status.next_action == DunningAction.NONE
