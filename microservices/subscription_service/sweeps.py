"""
Billing Sweeps

Scheduled passes over subscriptions and invoices. Each stage lists its
candidates, then handles them one at a time; a failing row is logged and
counted and never aborts the run.
"""

import logging
from typing import Awaitable, Callable, List, Optional

from core.config import DunningConfig

from .dunning_service import DunningService
from .models import DunningRunSummary
from .plan_change import PlanChangeScheduler
from .protocols import SubscriptionServiceError
from .subscription_service import SubscriptionLifecycleService

logger = logging.getLogger(__name__)

STAGES = ("retry", "pause", "suspend", "cancel", "expire", "plan_changes")


class BillingSweepRunner:
    """Runs the retry/pause/suspend/cancel/expire/plan change stages"""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycleService,
        dunning: DunningService,
        plan_changes: Optional[PlanChangeScheduler] = None,
        config: Optional[DunningConfig] = None,
    ):
        self.lifecycle = lifecycle
        self.dunning = dunning
        self.plan_changes = plan_changes
        self.config = config or dunning.config

    async def run(self, stage: Optional[str] = None, dry_run: bool = False) -> DunningRunSummary:
        summary = DunningRunSummary(dry_run=dry_run)

        if not self.config.enabled:
            logger.info("Dunning is disabled; skipping sweep")
            return summary

        if stage is not None and stage not in STAGES:
            raise SubscriptionServiceError(
                f"Unknown sweep stage '{stage}'. Expected one of: {', '.join(STAGES)}"
            )

        stages = [stage] if stage else list(STAGES)
        logger.info(f"Starting billing sweep (stages={','.join(stages)}, dry_run={dry_run})")

        if "retry" in stages:
            summary.retried = await self._process_retries(summary, dry_run)
        if "pause" in stages:
            summary.paused = await self._process_pauses(summary, dry_run)
        if "suspend" in stages:
            summary.suspended = await self._process_suspensions(summary, dry_run)
        if "cancel" in stages:
            summary.cancelled = await self._process_cancellations(summary, dry_run)
        if "expire" in stages:
            summary.expired = await self._process_expirations(summary, dry_run)
        if "plan_changes" in stages and self.plan_changes is not None:
            summary.plan_changes_applied = await self._process_plan_changes(summary, dry_run)

        logger.info(
            f"Billing sweep complete: retried={summary.retried} paused={summary.paused} "
            f"suspended={summary.suspended} cancelled={summary.cancelled} "
            f"expired={summary.expired} plan_changes={summary.plan_changes_applied} "
            f"errors={summary.errors}"
        )
        return summary

    async def _each(
        self,
        label: str,
        rows: List,
        row_id: Callable,
        action: Callable[..., Awaitable],
        summary: DunningRunSummary,
        dry_run: bool,
    ) -> int:
        if dry_run:
            logger.info(f"[dry-run] Would {label} {len(rows)} record(s)")
            return len(rows)

        count = 0
        for row in rows:
            try:
                result = await action(row)
            except Exception as e:
                summary.errors += 1
                logger.error(f"Failed to {label} {row_id(row)}: {e}", exc_info=True)
                continue
            if result:
                count += 1
        return count

    async def _process_retries(self, summary: DunningRunSummary, dry_run: bool) -> int:
        invoices = await self.dunning.get_invoices_due_for_retry()

        async def attempt(invoice):
            await self.dunning.retry_payment(invoice.invoice_id)
            return True

        return await self._each("retry payment for invoice", invoices, lambda i: i.invoice_id, attempt, summary, dry_run)

    async def _process_pauses(self, summary: DunningRunSummary, dry_run: bool) -> int:
        subscriptions = await self.dunning.get_subscriptions_for_pause()
        return await self._each(
            "pause subscription", subscriptions, lambda s: s.subscription_id,
            self.dunning.pause_subscription, summary, dry_run,
        )

    async def _process_suspensions(self, summary: DunningRunSummary, dry_run: bool) -> int:
        subscriptions = await self.dunning.get_subscriptions_for_suspension()
        return await self._each(
            "suspend workspace for subscription", subscriptions, lambda s: s.subscription_id,
            self.dunning.suspend_workspace, summary, dry_run,
        )

    async def _process_cancellations(self, summary: DunningRunSummary, dry_run: bool) -> int:
        subscriptions = await self.dunning.get_subscriptions_for_cancellation()
        return await self._each(
            "cancel subscription", subscriptions, lambda s: s.subscription_id,
            self.dunning.cancel_subscription, summary, dry_run,
        )

    async def _process_expirations(self, summary: DunningRunSummary, dry_run: bool) -> int:
        subscriptions = await self.lifecycle.get_expired_cancellations()

        async def expire(subscription):
            if subscription.is_terminal or not subscription.has_pending_cancellation:
                return False
            return await self.lifecycle.expire_subscription(
                subscription, reason="cancelled_at_period_end"
            )

        return await self._each(
            "expire subscription", subscriptions, lambda s: s.subscription_id,
            expire, summary, dry_run,
        )

    async def _process_plan_changes(self, summary: DunningRunSummary, dry_run: bool) -> int:
        subscriptions = await self.lifecycle.repository.find_pending_plan_changes_due(
            self.lifecycle.clock.now()
        )

        async def apply(subscription):
            return await self.plan_changes.apply_scheduled_plan_change(subscription.subscription_id)

        return await self._each(
            "apply scheduled plan change for", subscriptions, lambda s: s.subscription_id,
            apply, summary, dry_run,
        )


__all__ = ["BillingSweepRunner", "STAGES"]
