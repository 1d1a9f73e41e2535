"""
Notification Service Client

Client for dispatching billing notifications to a workspace owner.
"""

import logging
from typing import Any, Dict, Optional

from core.service_client_base import BaseServiceClient

from ..models import NotificationType, Subscription

logger = logging.getLogger(__name__)


class NotificationClient(BaseServiceClient):
    """Client for notification_service"""

    service_name = "notification_service"
    url_setting = "notification_service_url"

    async def dispatch(
        self,
        notification: NotificationType,
        subscription: Optional[Subscription],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a notification to the owner of the subscription's workspace.

        Args:
            notification: Notification template to render
            subscription: Subscription the notification concerns
            context: Extra template variables

        Returns:
            True when the notification service accepted the request
        """
        request_data = {
            "template": notification.value,
            "workspace_id": (context or {}).get("workspace_id")
            or (subscription.workspace_id if subscription else None),
            "subscription_id": subscription.subscription_id if subscription else None,
            "context": context or {},
        }
        try:
            response = await self.post("/api/v1/notifications/workspace-owner", json=request_data)
            if response.status_code in (200, 201, 202):
                return True
            logger.warning(f"Notification {notification.value} rejected: {response.status_code}")
            return False
        except Exception as e:
            logger.error(f"Error sending notification {notification.value}: {e}")
            return False


__all__ = ["NotificationClient"]
