"""
Invoice Repository

Reads invoices from the shared billing database and writes back only the
dunning fields (status, charge attempts, paid_at). Invoice creation belongs
to the invoicing service.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper, get_postgres_client

from .models import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)

_OUTSTANDING = "('sent', 'overdue')"


class InvoiceRepository:
    """Invoice data access repository - PostgreSQL"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db
        self.schema = "billing"
        self.invoices_table = "invoices"

    @property
    def table(self) -> str:
        return f"{self.schema}.{self.invoices_table}"

    async def initialize(self):
        if self.db is None:
            self.db = await get_postgres_client("subscription_service")
        logger.info("Invoice repository initialized")

    async def close(self):
        # Pool is shared with the subscription repository, which closes it
        logger.info("Invoice repository closed")

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        query = f'SELECT * FROM {self.table} WHERE invoice_id = $1'
        async with self.db:
            row = await self.db.query_row(query, params=[invoice_id])
        return self._row_to_invoice(row) if row else None

    async def save_invoice(self, invoice: Invoice, expected_version: int) -> Optional[Invoice]:
        """Compare-and-set write of the dunning fields"""
        query = f'''
            UPDATE {self.table}
            SET status = $1,
                charge_attempts = $2,
                last_charge_attempt = $3,
                next_charge_attempt = $4,
                paid_at = $5,
                version = version + 1
            WHERE invoice_id = $6 AND version = $7
            RETURNING *
        '''
        params = [
            invoice.status.value,
            invoice.charge_attempts,
            invoice.last_charge_attempt,
            invoice.next_charge_attempt,
            invoice.paid_at,
            invoice.invoice_id,
            expected_version,
        ]

        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
        except Exception as e:
            logger.error(f"Error saving invoice {invoice.invoice_id}: {e}", exc_info=True)
            raise

        return self._row_to_invoice(row) if row else None

    async def find_due_for_retry(self, now: datetime) -> List[Invoice]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE status IN {_OUTSTANDING}
            AND auto_charge = TRUE
            AND next_charge_attempt IS NOT NULL
            AND next_charge_attempt <= $1
            ORDER BY next_charge_attempt ASC
        '''
        async with self.db:
            results = await self.db.query(query, params=[now])
        return [self._row_to_invoice(row) for row in results]

    async def find_exhausted_for_workspace(
        self, workspace_id: str, last_attempt_before: datetime
    ) -> List[Invoice]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE workspace_id = $1
            AND status IN {_OUTSTANDING}
            AND auto_charge = TRUE
            AND next_charge_attempt IS NULL
            AND last_charge_attempt IS NOT NULL
            AND last_charge_attempt <= $2
        '''
        async with self.db:
            results = await self.db.query(query, params=[workspace_id, last_attempt_before])
        return [self._row_to_invoice(row) for row in results]

    async def find_oldest_outstanding_for_workspace(self, workspace_id: str) -> Optional[Invoice]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE workspace_id = $1
            AND status IN {_OUTSTANDING}
            AND auto_charge = TRUE
            ORDER BY due_date ASC NULLS LAST
            LIMIT 1
        '''
        async with self.db:
            row = await self.db.query_row(query, params=[workspace_id])
        return self._row_to_invoice(row) if row else None

    def _row_to_invoice(self, row: Dict[str, Any]) -> Invoice:
        """Convert database row to Invoice model"""
        return Invoice(
            invoice_id=row.get("invoice_id"),
            workspace_id=row.get("workspace_id"),
            subscription_id=row.get("subscription_id"),
            status=InvoiceStatus(row.get("status")),
            amount_due=Decimal(str(row.get("amount_due") or 0)),
            currency=row.get("currency") or "GBP",
            due_date=row.get("due_date"),
            auto_charge=bool(row.get("auto_charge", True)),
            charge_attempts=int(row.get("charge_attempts") or 0),
            last_charge_attempt=row.get("last_charge_attempt"),
            next_charge_attempt=row.get("next_charge_attempt"),
            paid_at=row.get("paid_at"),
            version=int(row.get("version") or 0),
        )


__all__ = ["InvoiceRepository"]
