"""
Payment Service Client

Asks the payment service to charge an outstanding invoice again. Gateway
APIs live behind the payment service; this client only reads the result.
"""

import logging

import httpx

from core.service_client_base import BaseServiceClient

from ..models import Invoice

logger = logging.getLogger(__name__)


class PaymentClient(BaseServiceClient):
    """Client for the payment service"""

    service_name = "payment_service"
    url_setting = "payment_service_url"

    async def retry_invoice_payment(self, invoice: Invoice) -> bool:
        """
        Retry the charge for an invoice.

        Returns:
            True if the charge succeeded, False if it was declined

        Raises:
            httpx.HTTPError: the payment service could not be reached
        """
        try:
            response = await self.post(
                f"/api/v1/invoices/{invoice.invoice_id}/charge",
                json={
                    "amount": str(invoice.amount_due),
                    "currency": invoice.currency,
                    "attempt": invoice.charge_attempts + 1,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Error retrying payment for invoice {invoice.invoice_id}: {e}")
            raise

        if response.status_code != 200:
            logger.warning(
                f"Charge for invoice {invoice.invoice_id} declined: {response.status_code}"
            )
            return False
        return bool(response.json().get("success", False))


__all__ = ["PaymentClient"]
