#!/usr/bin/env python3
"""Billing platform main configuration

Combines all sub-configs for the subscription lifecycle service.
"""
import os
from dataclasses import dataclass, field

from .billing_config import BillingConfig, DunningConfig, SubscriptionConfig
from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


@dataclass
class AppConfig:
    """Main configuration for the billing lifecycle service"""
    environment: str = "development"

    # ===========================================
    # Sub-configs
    # ===========================================
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)

    @property
    def subscriptions(self) -> SubscriptionConfig:
        return self.billing.subscriptions

    @property
    def dunning(self) -> DunningConfig:
        return self.billing.dunning

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
            logging=LoggingConfig.from_env(),
            billing=BillingConfig.from_env(),
        )
