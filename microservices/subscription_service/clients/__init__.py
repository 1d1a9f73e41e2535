"""
Subscription Service Clients

Service clients for communicating with collaborator microservices.
"""

from .catalog_client import CatalogClient
from .entitlement_client import EntitlementClient
from .notification_client import NotificationClient
from .payment_client import PaymentClient

__all__ = ["CatalogClient", "EntitlementClient", "NotificationClient", "PaymentClient"]
