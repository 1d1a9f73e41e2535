"""
Subscription Lifecycle - Component Tests

Tests for:
- Creation and event publishing
- Cancellation at period end and immediately
- Resume, renew and expire
- Voluntary pause ceiling
- Version conflicts and terminal subscriptions

Usage:
    pytest tests/component/subscription_service -v
"""

from datetime import timedelta

import pytest

from core.config import SubscriptionConfig
from microservices.subscription_service.models import (
    AssignmentStatus,
    BillingCycle,
    InitiatedBy,
    SubscriptionStatus,
)
from microservices.subscription_service.protocols import (
    ConcurrentModificationError,
    PauseLimitExceededError,
    PausingDisabledError,
    RenewalNotDueError,
    SubscriptionNotFoundError,
    SubscriptionTerminatedError,
    SubscriptionValidationError,
)


# ============================================================================
# Creation
# ============================================================================

@pytest.mark.component
@pytest.mark.asyncio
class TestSubscriptionCreation:

    async def test_create_starts_active_period(self, lifecycle, clock, data_factory, mock_event_bus):
        assignment = data_factory.make_assignment(package_code="starter")

        subscription = await lifecycle.create(assignment, BillingCycle.MONTHLY)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.workspace_id == assignment.workspace_id
        assert subscription.package_assignment_id == assignment.assignment_id
        assert subscription.current_period_start == clock.now()
        assert subscription.current_period_end == clock.now() + timedelta(days=30)
        assert subscription.gateway == "btcpay"
        assert subscription.version == 0
        assert subscription.status_history[0].to_status == SubscriptionStatus.ACTIVE
        assert len(mock_event_bus.get_events_by_type("subscription.created")) == 1

    async def test_yearly_period_is_365_days(self, lifecycle, clock, data_factory):
        subscription = await lifecycle.create(data_factory.make_assignment(), BillingCycle.YEARLY)

        assert subscription.current_period_end - subscription.current_period_start == timedelta(days=365)

    async def test_get_unknown_subscription_raises(self, lifecycle):
        with pytest.raises(SubscriptionNotFoundError):
            await lifecycle.get_subscription("sub_missing")

    async def test_list_filters_by_workspace_and_status(self, lifecycle, seed):
        active = seed()
        seed(status=SubscriptionStatus.PAUSED, workspace_id=active.workspace_id)
        seed()

        results = await lifecycle.list_subscriptions(
            workspace_id=active.workspace_id, status=SubscriptionStatus.ACTIVE
        )

        assert [s.subscription_id for s in results] == [active.subscription_id]


# ============================================================================
# Cancellation
# ============================================================================

@pytest.mark.component
@pytest.mark.asyncio
class TestCancellation:

    async def test_period_end_cancellation_keeps_status(self, lifecycle, seed, clock, mock_entitlements):
        subscription = seed(days_into_period=10)

        saved = await lifecycle.request_cancellation_at_period_end(subscription.subscription_id, "too expensive")

        assert saved.status == SubscriptionStatus.ACTIVE
        assert saved.cancelled_at == clock.now()
        assert saved.cancellation_reason == "too expensive"
        assert saved.ended_at is None
        assert saved.has_pending_cancellation
        mock_entitlements.expire_assignment.assert_not_called()

    async def test_cancel_immediately_ends_subscription(self, lifecycle, seed, clock, mock_entitlements, mock_event_bus):
        subscription = seed()

        saved = await lifecycle.cancel_immediately(subscription.subscription_id, "fraud")

        assert saved.status == SubscriptionStatus.CANCELLED
        assert saved.ended_at == clock.now()
        assert saved.is_terminal
        assert saved.status_history[-1].initiated_by == InitiatedBy.ADMIN
        assert mock_entitlements.assignments[subscription.package_assignment_id].status == AssignmentStatus.EXPIRED
        assert len(mock_event_bus.get_events_by_type("subscription.cancelled")) == 1

    async def test_cancel_immediately_can_expire(self, lifecycle, seed):
        subscription = seed()

        saved = await lifecycle.cancel_immediately(subscription.subscription_id, expire=True)

        assert saved.status == SubscriptionStatus.EXPIRED

    async def test_terminal_subscription_rejects_mutation(self, lifecycle, seed):
        subscription = seed()
        await lifecycle.cancel_immediately(subscription.subscription_id)

        with pytest.raises(SubscriptionTerminatedError):
            await lifecycle.request_cancellation_at_period_end(subscription.subscription_id)
        with pytest.raises(SubscriptionTerminatedError):
            await lifecycle.pause(subscription.subscription_id)

    async def test_bulk_cancel_reports_each_outcome(self, lifecycle, seed):
        live = seed()
        ended = seed()
        await lifecycle.cancel_immediately(ended.subscription_id)

        results = await lifecycle.bulk_cancel(
            [live.subscription_id, ended.subscription_id, "sub_missing"], reason="cleanup"
        )

        assert results == {
            live.subscription_id: "cancelled",
            ended.subscription_id: "already_ended",
            "sub_missing": "not_found",
        }


# ============================================================================
# Resume / Renew / Expire
# ============================================================================

@pytest.mark.component
@pytest.mark.asyncio
class TestResumeAndRenew:

    async def test_resume_before_period_end_clears_cancellation(self, lifecycle, seed, mock_event_bus):
        subscription = seed(days_into_period=5)
        await lifecycle.request_cancellation_at_period_end(subscription.subscription_id)

        resumed = await lifecycle.resume(subscription.subscription_id)

        assert resumed.cancelled_at is None
        assert resumed.cancellation_reason is None
        assert len(mock_event_bus.get_events_by_type("subscription.resumed")) == 1

    async def test_resume_after_period_end_leaves_cancellation(self, lifecycle, seed, clock):
        subscription = seed(days_into_period=5)
        await lifecycle.request_cancellation_at_period_end(subscription.subscription_id)
        clock.set(subscription.current_period_end)

        result = await lifecycle.resume(subscription.subscription_id)

        assert result.cancelled_at is not None

    async def test_renew_extends_by_one_period(self, lifecycle, seed, clock):
        subscription = seed(days_into_period=30)
        old_end = subscription.current_period_end

        renewed = await lifecycle.renew(subscription.subscription_id)

        assert renewed.current_period_start == old_end
        assert renewed.current_period_end == old_end + timedelta(days=30)
        assert renewed.period_extensions[-1].previous_period_end == old_end

    async def test_renew_twice_does_not_double_extend(self, lifecycle, seed):
        subscription = seed(days_into_period=30)
        first = await lifecycle.renew(subscription.subscription_id)

        with pytest.raises(RenewalNotDueError):
            await lifecycle.renew(subscription.subscription_id)

        stored = await lifecycle.get_subscription(subscription.subscription_id)
        assert stored.current_period_end == first.current_period_end
        assert len(stored.period_extensions) == 1

    async def test_renew_supersedes_pending_cancellation(self, lifecycle, seed, clock):
        subscription = seed(days_into_period=20)
        await lifecycle.request_cancellation_at_period_end(subscription.subscription_id)
        clock.set(subscription.current_period_end)

        renewed = await lifecycle.renew(subscription.subscription_id)

        assert renewed.cancelled_at is None

    async def test_renew_can_let_cancellation_lapse(self, lifecycle, seed, clock):
        subscription = seed(days_into_period=20)
        await lifecycle.request_cancellation_at_period_end(subscription.subscription_id)
        clock.set(subscription.current_period_end)

        result = await lifecycle.renew(subscription.subscription_id, supersede_cancellation=False)

        assert result.current_period_end == subscription.current_period_end
        assert result.cancelled_at is not None

    async def test_renew_reactivates_past_due(self, lifecycle, seed):
        subscription = seed(days_into_period=30, status=SubscriptionStatus.PAST_DUE)

        renewed = await lifecycle.renew(subscription.subscription_id)

        assert renewed.status == SubscriptionStatus.ACTIVE

    async def test_expire_is_terminal(self, lifecycle, seed, mock_entitlements):
        subscription = seed()

        expired = await lifecycle.expire(subscription.subscription_id, reason="manual")

        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.ended_at is not None
        mock_entitlements.expire_assignment.assert_awaited_once_with(subscription.package_assignment_id)

    async def test_expiring_soon_window(self, lifecycle, seed):
        soon = seed(days_into_period=25)
        seed(days_into_period=5)

        expiring = await lifecycle.get_expiring_soon(days=7)

        assert [s.subscription_id for s in expiring] == [soon.subscription_id]


# ============================================================================
# Pausing
# ============================================================================

@pytest.mark.component
@pytest.mark.asyncio
class TestPausing:

    @pytest.fixture
    def subscription_config(self):
        return SubscriptionConfig(max_pause_cycles=2)

    async def test_pause_ceiling_and_forced_pause(self, lifecycle, seed):
        subscription = seed()
        sub_id = subscription.subscription_id

        first = await lifecycle.pause(sub_id)
        assert first.pause_count == 1
        await lifecycle.unpause(sub_id)

        second = await lifecycle.pause(sub_id)
        assert second.pause_count == 2
        await lifecycle.unpause(sub_id)

        with pytest.raises(PauseLimitExceededError) as exc_info:
            await lifecycle.pause(sub_id)
        assert exc_info.value.max_pause_cycles == 2

        forced = await lifecycle.pause(sub_id, force=True)
        assert forced.status == SubscriptionStatus.PAUSED
        assert forced.pause_count == 3

    async def test_pause_status_reports_remaining(self, lifecycle, seed):
        subscription = seed()
        await lifecycle.pause(subscription.subscription_id)

        status = await lifecycle.get_pause_status(subscription.subscription_id)

        assert status.pause_count == 1
        assert status.remaining_pause_cycles == 1
        assert status.can_pause is True

    async def test_pause_requires_active(self, lifecycle, seed):
        subscription = seed(status=SubscriptionStatus.PAST_DUE)

        with pytest.raises(SubscriptionValidationError):
            await lifecycle.pause(subscription.subscription_id)

    async def test_unpause_of_active_is_noop(self, lifecycle, seed):
        subscription = seed()

        result = await lifecycle.unpause(subscription.subscription_id)

        assert result.version == subscription.version

    async def test_pausing_disabled(self, mock_repository, mock_entitlements, clock, mock_event_bus, data_factory):
        from microservices.subscription_service.subscription_service import SubscriptionLifecycleService

        service = SubscriptionLifecycleService(
            repository=mock_repository,
            entitlements=mock_entitlements,
            clock=clock,
            config=SubscriptionConfig(allow_pause=False),
            event_bus=mock_event_bus,
        )
        subscription = mock_repository.add_subscription(data_factory.make_subscription(clock.now()))

        with pytest.raises(PausingDisabledError):
            await service.pause(subscription.subscription_id)


# ============================================================================
# Concurrency
# ============================================================================

@pytest.mark.component
@pytest.mark.asyncio
class TestVersionConflicts:

    async def test_stale_commit_raises(self, lifecycle, seed, mock_repository):
        subscription = seed()
        stale = await lifecycle.get_subscription(subscription.subscription_id)
        mock_repository.simulate_concurrent_write(subscription.subscription_id)

        stale.cancellation_reason = "late writer"
        with pytest.raises(ConcurrentModificationError):
            await lifecycle.commit(stale)

        assert mock_repository.stored(subscription.subscription_id).cancellation_reason is None

    async def test_every_write_bumps_version(self, lifecycle, seed):
        subscription = seed()

        saved = await lifecycle.request_cancellation_at_period_end(subscription.subscription_id)
        resumed = await lifecycle.resume(subscription.subscription_id)

        assert saved.version == subscription.version + 1
        assert resumed.version == subscription.version + 2
