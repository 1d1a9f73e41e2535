"""
Pause Cycle Guard

Ceiling on voluntary pauses per subscription. Involuntary (dunning) pauses
never pass through here.
"""
from typing import Optional

from core.config import SubscriptionConfig

from .models import PauseStatus, Subscription


class PauseCycleGuard:
    """Decides whether a subscription may pause again"""

    def __init__(self, config: Optional[SubscriptionConfig] = None):
        self.config = config or SubscriptionConfig()

    @property
    def max_pause_cycles(self) -> int:
        return self.config.max_pause_cycles

    def can_pause(self, subscription: Subscription) -> bool:
        return self.config.allow_pause and subscription.pause_count < self.max_pause_cycles

    def remaining_pause_cycles(self, subscription: Subscription) -> int:
        return max(0, self.max_pause_cycles - subscription.pause_count)

    def status(self, subscription: Subscription) -> PauseStatus:
        return PauseStatus(
            can_pause=self.can_pause(subscription),
            pause_count=subscription.pause_count,
            remaining_pause_cycles=self.remaining_pause_cycles(subscription),
            max_pause_cycles=self.max_pause_cycles,
        )


__all__ = ["PauseCycleGuard"]
