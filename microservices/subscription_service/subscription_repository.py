"""
Subscription Repository

Data access layer for subscriptions - PostgreSQL (asyncpg)

Typed history records (status history, period extensions, plan changes) are
stored as JSONB columns and loaded with the row, so every read returns a
complete aggregate. Writes are compare-and-set on the version column.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper, get_postgres_client

from .models import (
    BillingCycle,
    PendingPlanChange,
    PeriodExtension,
    PlanChangeRecord,
    StatusHistoryEntry,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

_COLUMNS = (
    "subscription_id", "workspace_id", "package_assignment_id", "package_code",
    "gateway", "gateway_subscription_id", "gateway_customer_id",
    "status", "billing_cycle", "current_period_start", "current_period_end",
    "cancelled_at", "cancellation_reason", "ended_at",
    "paused_at", "pause_count", "suspended_at",
    "status_history", "period_extensions", "pending_plan_change", "last_plan_change",
    "version", "created_at", "updated_at",
)

_JSON_COLUMNS = ("status_history", "period_extensions", "pending_plan_change", "last_plan_change")


class SubscriptionRepository:
    """Subscription data access repository - PostgreSQL"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db
        self.schema = "subscription"
        self.subscriptions_table = "subscriptions"

    @property
    def table(self) -> str:
        return f"{self.schema}.{self.subscriptions_table}"

    async def initialize(self):
        """Initialize repository"""
        if self.db is None:
            self.db = await get_postgres_client("subscription_service")
        logger.info("Subscription repository initialized")

    async def close(self):
        """Close repository connections"""
        if self.db is not None:
            await self.db.close()
        logger.info("Subscription repository connections closed")

    # ====================
    # Subscription CRUD
    # ====================

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription at version 0"""
        values = self._subscription_to_params(subscription)
        placeholders = ", ".join(
            f"${i}::jsonb" if column in _JSON_COLUMNS else f"${i}"
            for i, column in enumerate(_COLUMNS, start=1)
        )
        query = f'''
            INSERT INTO {self.table} ({", ".join(_COLUMNS)})
            VALUES ({placeholders})
            RETURNING *
        '''

        try:
            async with self.db:
                row = await self.db.query_row(query, params=values)
        except Exception as e:
            logger.error(f"Error creating subscription: {e}", exc_info=True)
            raise

        return self._row_to_subscription(row)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID"""
        query = f'SELECT * FROM {self.table} WHERE subscription_id = $1'
        async with self.db:
            row = await self.db.query_row(query, params=[subscription_id])
        return self._row_to_subscription(row) if row else None

    async def save_subscription(
        self, subscription: Subscription, expected_version: int
    ) -> Optional[Subscription]:
        """
        Write every mutable column when the stored version still matches.

        Returns the stored row with version + 1, or None when another writer
        got there first.
        """
        values = self._subscription_to_params(subscription)
        mutable = [c for c in _COLUMNS if c not in ("subscription_id", "version", "created_at")]

        set_clauses = []
        params: List[Any] = []
        for column in mutable:
            params.append(values[_COLUMNS.index(column)])
            cast = "::jsonb" if column in _JSON_COLUMNS else ""
            set_clauses.append(f"{column} = ${len(params)}{cast}")
        set_clauses.append("version = version + 1")

        params.append(subscription.subscription_id)
        id_param = len(params)
        params.append(expected_version)
        version_param = len(params)

        query = f'''
            UPDATE {self.table}
            SET {", ".join(set_clauses)}
            WHERE subscription_id = ${id_param} AND version = ${version_param}
            RETURNING *
        '''

        try:
            async with self.db:
                row = await self.db.query_row(query, params=params)
        except Exception as e:
            logger.error(f"Error saving subscription {subscription.subscription_id}: {e}", exc_info=True)
            raise

        if row is None:
            logger.debug(
                f"Version check failed for subscription {subscription.subscription_id} "
                f"(expected {expected_version})"
            )
            return None
        return self._row_to_subscription(row)

    async def list_subscriptions(
        self,
        workspace_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Subscription]:
        """List subscriptions with filters"""
        conditions = []
        params: List[Any] = []
        param_count = 0

        if workspace_id:
            param_count += 1
            conditions.append(f"workspace_id = ${param_count}")
            params.append(workspace_id)

        if status:
            param_count += 1
            conditions.append(f"status = ${param_count}")
            params.append(status)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f'''
            SELECT * FROM {self.table}
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_count + 1} OFFSET ${param_count + 2}
        '''
        params.extend([limit, offset])

        async with self.db:
            results = await self.db.query(query, params=params)
        return [self._row_to_subscription(row) for row in results]

    # ====================
    # Sweep Queries
    # ====================

    async def find_live_for_workspace(self, workspace_id: str) -> Optional[Subscription]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE workspace_id = $1
            AND status IN ('active', 'past_due', 'paused')
            AND ended_at IS NULL
            ORDER BY created_at ASC
            LIMIT 1
        '''
        async with self.db:
            row = await self.db.query_row(query, params=[workspace_id])
        return self._row_to_subscription(row) if row else None

    async def find_past_due(self) -> List[Subscription]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE status = 'past_due' AND ended_at IS NULL
            ORDER BY updated_at ASC
        '''
        return await self._fetch(query, [])

    async def find_paused_before(self, cutoff: datetime) -> List[Subscription]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE status = 'paused' AND ended_at IS NULL
            AND paused_at IS NOT NULL AND paused_at <= $1
            ORDER BY paused_at ASC
        '''
        return await self._fetch(query, [cutoff])

    async def find_expiring_between(self, start: datetime, end: datetime) -> List[Subscription]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE status = 'active' AND cancelled_at IS NULL AND ended_at IS NULL
            AND current_period_end > $1 AND current_period_end <= $2
            ORDER BY current_period_end ASC
        '''
        return await self._fetch(query, [start, end])

    async def find_cancelled_ended_before(self, cutoff: datetime) -> List[Subscription]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE status IN ('active', 'trialing', 'past_due')
            AND cancelled_at IS NOT NULL AND ended_at IS NULL
            AND current_period_end <= $1
            ORDER BY current_period_end ASC
        '''
        return await self._fetch(query, [cutoff])

    async def find_pending_plan_changes_due(self, cutoff: datetime) -> List[Subscription]:
        query = f'''
            SELECT * FROM {self.table}
            WHERE pending_plan_change IS NOT NULL AND ended_at IS NULL
            AND (pending_plan_change->>'scheduled_for')::timestamptz <= $1
        '''
        return await self._fetch(query, [cutoff])

    async def _fetch(self, query: str, params: List[Any]) -> List[Subscription]:
        async with self.db:
            results = await self.db.query(query, params=params)
        return [self._row_to_subscription(row) for row in results]

    # ====================
    # Helper Methods
    # ====================

    def _subscription_to_params(self, subscription: Subscription) -> List[Any]:
        data = subscription.model_dump(mode="python")
        params = []
        for column in _COLUMNS:
            value = data.get(column)
            if column in _JSON_COLUMNS:
                field = getattr(subscription, column)
                if isinstance(field, list):
                    value = json.dumps([item.model_dump(mode="json") for item in field])
                elif field is not None:
                    value = json.dumps(field.model_dump(mode="json"))
                else:
                    value = None
            elif column in ("status", "billing_cycle"):
                value = getattr(subscription, column).value
            params.append(value)
        return params

    def _row_to_subscription(self, row: Dict[str, Any]) -> Subscription:
        """Convert database row to Subscription model"""

        def load(column, default=None):
            value = row.get(column)
            if isinstance(value, str):
                value = json.loads(value)
            return default if value is None else value

        pending = load("pending_plan_change")
        last_change = load("last_plan_change")

        return Subscription(
            subscription_id=row.get("subscription_id"),
            workspace_id=row.get("workspace_id"),
            package_assignment_id=row.get("package_assignment_id"),
            package_code=row.get("package_code"),
            gateway=row.get("gateway"),
            gateway_subscription_id=row.get("gateway_subscription_id"),
            gateway_customer_id=row.get("gateway_customer_id"),
            status=SubscriptionStatus(row.get("status")),
            billing_cycle=BillingCycle(row.get("billing_cycle")),
            current_period_start=row.get("current_period_start"),
            current_period_end=row.get("current_period_end"),
            cancelled_at=row.get("cancelled_at"),
            cancellation_reason=row.get("cancellation_reason"),
            ended_at=row.get("ended_at"),
            paused_at=row.get("paused_at"),
            pause_count=int(row.get("pause_count") or 0),
            suspended_at=row.get("suspended_at"),
            version=int(row.get("version") or 0),
            status_history=[StatusHistoryEntry(**entry) for entry in load("status_history", [])],
            period_extensions=[PeriodExtension(**entry) for entry in load("period_extensions", [])],
            pending_plan_change=PendingPlanChange(**pending) if pending else None,
            last_plan_change=PlanChangeRecord(**last_change) if last_change else None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["SubscriptionRepository"]
