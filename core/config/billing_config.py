#!/usr/bin/env python3
"""Billing lifecycle configuration

Subscription pause limits, proration switches and the dunning schedule.
Defaults mirror the commerce settings shipped with the platform.
"""
import os
from dataclasses import dataclass, field
from typing import List

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _int_list(val: str, default: List[int]) -> List[int]:
    if not val:
        return list(default)
    try:
        days = [int(part) for part in val.split(",") if part.strip()]
    except ValueError:
        return list(default)
    return days or list(default)


DEFAULT_RETRY_DAYS = [1, 3, 7]


@dataclass
class SubscriptionConfig:
    """Subscription behaviour settings"""
    allow_pause: bool = True
    max_pause_cycles: int = 3
    allow_proration: bool = True
    currency: str = "GBP"
    default_gateway: str = "btcpay"

    @classmethod
    def from_env(cls) -> 'SubscriptionConfig':
        """Load subscription config from environment variables"""
        return cls(
            allow_pause=_bool(os.getenv("SUBSCRIPTIONS_ALLOW_PAUSE", "true")),
            max_pause_cycles=_int(os.getenv("SUBSCRIPTIONS_MAX_PAUSE_CYCLES", "3"), 3),
            allow_proration=_bool(os.getenv("SUBSCRIPTIONS_ALLOW_PRORATION", "true")),
            currency=os.getenv("COMMERCE_CURRENCY", "GBP"),
            default_gateway=os.getenv("COMMERCE_DEFAULT_GATEWAY", "btcpay"),
        )


@dataclass
class DunningConfig:
    """Failed payment recovery schedule"""
    enabled: bool = True

    # Days after each failure to schedule the next retry
    retry_days: List[int] = field(default_factory=lambda: list(DEFAULT_RETRY_DAYS))

    # Grace before the first automated retry
    initial_grace_hours: int = 24

    # Measured from paused_at
    suspend_after_days: int = 14
    cancel_after_days: int = 30

    send_notifications: bool = True

    @property
    def pause_after_days(self) -> int:
        """Days after the last charge attempt before an exhausted invoice pauses its subscription"""
        return sum(self.retry_days) + 1

    @property
    def max_retries(self) -> int:
        return len(self.retry_days)

    @classmethod
    def from_env(cls) -> 'DunningConfig':
        """Load dunning config from environment variables"""
        return cls(
            enabled=_bool(os.getenv("DUNNING_ENABLED", "true")),
            retry_days=_int_list(os.getenv("DUNNING_RETRY_DAYS", ""), DEFAULT_RETRY_DAYS),
            initial_grace_hours=_int(os.getenv("DUNNING_INITIAL_GRACE_HOURS", "24"), 24),
            suspend_after_days=_int(os.getenv("DUNNING_SUSPEND_AFTER_DAYS", "14"), 14),
            cancel_after_days=_int(os.getenv("DUNNING_CANCEL_AFTER_DAYS", "30"), 30),
            send_notifications=_bool(os.getenv("DUNNING_SEND_NOTIFICATIONS", "true")),
        )


@dataclass
class BillingConfig:
    """Combined billing lifecycle configuration"""
    subscriptions: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    dunning: DunningConfig = field(default_factory=DunningConfig)

    @classmethod
    def from_env(cls) -> 'BillingConfig':
        return cls(
            subscriptions=SubscriptionConfig.from_env(),
            dunning=DunningConfig.from_env(),
        )
