"""
Subscription Event Handlers

Handles incoming payment events that drive dunning.
"""

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict

from pydantic import ValidationError

from ..protocols import SubscriptionServiceError
from .models import PaymentSignalEvent

if TYPE_CHECKING:
    from ..dunning_service import DunningService

logger = logging.getLogger(__name__)


class SubscriptionEventHandlers:
    """Event handlers for subscription service"""

    def __init__(self, dunning_service: "DunningService"):
        self.dunning_service = dunning_service

    def get_event_handler_map(self) -> Dict[str, Callable[[Any], Awaitable[None]]]:
        """Get mapping of event patterns to handler functions"""
        return {
            "payment.succeeded": self.handle_payment_succeeded,
            "payment.failed": self.handle_payment_failed,
        }

    def _parse(self, event) -> PaymentSignalEvent:
        data = event.data if hasattr(event, "data") else event
        return PaymentSignalEvent.model_validate(data or {})

    async def handle_payment_succeeded(self, event) -> None:
        """Successful charge: clear dunning state and reactivate"""
        try:
            signal = self._parse(event)
        except ValidationError as e:
            logger.warning(f"Ignoring payment.succeeded without invoice_id: {e}")
            return

        try:
            await self.dunning_service.handle_payment_recovery(signal.invoice_id, signal.subscription_id)
            logger.info(f"Payment succeeded for invoice {signal.invoice_id}")
        except SubscriptionServiceError as e:
            logger.warning(f"Could not apply payment recovery for invoice {signal.invoice_id}: {e}")
        except Exception as e:
            # Re-raised so the message is redelivered
            logger.error(f"Error handling payment succeeded: {e}", exc_info=True)
            raise

    async def handle_payment_failed(self, event) -> None:
        """Failed charge: schedule retries and mark past_due"""
        try:
            signal = self._parse(event)
        except ValidationError as e:
            logger.warning(f"Ignoring payment.failed without invoice_id: {e}")
            return

        try:
            await self.dunning_service.handle_payment_failure(signal.invoice_id, signal.subscription_id)
            logger.info(
                f"Payment failed for invoice {signal.invoice_id}"
                + (f": {signal.error_message}" if signal.error_message else "")
            )
        except SubscriptionServiceError as e:
            logger.warning(f"Could not apply payment failure for invoice {signal.invoice_id}: {e}")
        except Exception as e:
            logger.error(f"Error handling payment failed: {e}", exc_info=True)
            raise


__all__ = ["SubscriptionEventHandlers"]
