#!/usr/bin/env python3
"""Service configuration for collaborating services

Endpoints of the services the billing lifecycle engine calls into:
package catalog, entitlements, notifications and payments.
"""
import os
from dataclasses import dataclass

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """This service's identity plus collaborator endpoints"""

    # ===========================================
    # This service
    # ===========================================
    service_name: str = "subscription_service"
    service_host: str = "0.0.0.0"
    service_port: int = 8228
    debug: bool = False

    # ===========================================
    # Collaborators
    # ===========================================
    catalog_service_url: str = "http://localhost:8207"
    entitlement_service_url: str = "http://localhost:8230"
    notification_service_url: str = "http://localhost:8206"
    payment_service_url: str = "http://localhost:8229"

    request_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            service_name=os.getenv("SERVICE_NAME", "subscription_service"),
            service_host=os.getenv("SERVICE_HOST", "0.0.0.0"),
            service_port=_int(os.getenv("SERVICE_PORT", "8228"), 8228),
            debug=_bool(os.getenv("DEBUG", "false")),
            catalog_service_url=os.getenv("CATALOG_SERVICE_URL", "http://localhost:8207"),
            entitlement_service_url=os.getenv("ENTITLEMENT_SERVICE_URL", "http://localhost:8230"),
            notification_service_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8206"),
            payment_service_url=os.getenv("PAYMENT_SERVICE_URL", "http://localhost:8229"),
            request_timeout=float(os.getenv("SERVICE_REQUEST_TIMEOUT", "10.0") or 10.0),
        )
