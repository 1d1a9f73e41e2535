"""
PostgreSQL Client Wrapper

Centralized PostgreSQL client wrapper built on an asyncpg connection pool.
Provides a consistent database access pattern for the repositories.

Usage:
    from core.postgres_client import get_postgres_client

    # Get client instance
    db = await get_postgres_client("subscription_service")

    # Execute queries
    rows = await db.query("SELECT * FROM subscriptions WHERE workspace_id = $1", [workspace_id])
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import asyncpg

if TYPE_CHECKING:
    from core.config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper around an asyncpg pool.

    The pool is created lazily on first use (or on ``async with``) and is
    shared by every repository of the service.
    """

    def __init__(
        self,
        service_name: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        config: Optional["InfraConfig"] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            host: PostgreSQL host (defaults to InfraConfig)
            port: PostgreSQL port (defaults to InfraConfig)
            database: Database name (defaults to InfraConfig)
            username: Database username
            password: Database password
            config: Optional InfraConfig; defaults to global settings
        """
        if config is None:
            from core.config import get_settings
            config = get_settings().infrastructure

        self.service_name = service_name
        self.host = host or config.postgres_host
        self.port = port or config.postgres_port
        self.database = database or config.postgres_db
        self.username = username or config.postgres_user
        self.password = password or config.postgres_password
        self.min_size = config.postgres_min_pool
        self.max_size = config.postgres_max_pool

        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

        logger.info(f"PostgreSQL client initialized for {service_name}: {self.host}:{self.port}/{self.database}")

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    user=self.username,
                    password=self.password,
                    database=self.database,
                    min_size=self.min_size,
                    max_size=self.max_size,
                )
        return self._pool

    async def health_check(self) -> Optional[Dict]:
        """Check database health"""
        try:
            pool = await self._get_pool()
            value = await pool.fetchval("SELECT 1")
            return {"healthy": value == 1}
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return None

    async def __aenter__(self):
        """Ensure the pool exists"""
        await self._get_pool()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        # The pool is shared by every repository; close() releases it
        pass

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        pool = await self._get_pool()
        rows = await pool.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        pool = await self._get_pool()
        row = await pool.fetchrow(sql, *(params or []))
        return dict(row) if row else None

    async def close(self):
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")


# Singleton instances per service
_postgres_clients: Dict[str, PostgresClientWrapper] = {}


async def get_postgres_client(
    service_name: str,
    host: Optional[str] = None,
    port: Optional[int] = None,
    database: Optional[str] = None,
    **kwargs,
) -> PostgresClientWrapper:
    """
    Get or create PostgreSQL client for a service.

    Args:
        service_name: Service name
        host: Optional host override
        port: Optional port override
        database: Optional database override
        **kwargs: Additional client options

    Returns:
        PostgresClientWrapper instance
    """
    global _postgres_clients

    if service_name not in _postgres_clients:
        client = PostgresClientWrapper(
            service_name=service_name,
            host=host,
            port=port,
            database=database,
            **kwargs,
        )
        _postgres_clients[service_name] = client

    return _postgres_clients[service_name]


__all__ = ["PostgresClientWrapper", "get_postgres_client"]
