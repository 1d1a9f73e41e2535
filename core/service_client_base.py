"""
Base Service Client for Internal Microservice Communication

Base class for the httpx clients that call collaborator services.
"""

import httpx
import logging
from typing import Optional, Dict, Any, TYPE_CHECKING
from abc import ABC

if TYPE_CHECKING:
    from core.config import ServiceConfig

logger = logging.getLogger(__name__)


class BaseServiceClient(ABC):
    """
    Base class for collaborator service clients

    Handles:
    1. Base URL resolution from ServiceConfig
    2. HTTP client management
    3. Timeout control

    Example:
        class EntitlementClient(BaseServiceClient):
            service_name = "entitlement_service"
            url_setting = "entitlement_service_url"

            async def get_assignment(self, assignment_id: str):
                response = await self.get(f"/api/v1/assignments/{assignment_id}")
                return response.json()
    """

    # Subclasses define these
    service_name: str = None  # e.g. "entitlement_service"
    url_setting: str = None   # ServiceConfig attribute holding the base URL

    def __init__(
        self,
        base_url: Optional[str] = None,
        config: Optional["ServiceConfig"] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize service client

        Args:
            base_url: Service base URL (defaults to ServiceConfig)
            config: Optional ServiceConfig; defaults to global settings
            timeout: Request timeout in seconds
            transport: Optional httpx transport (mock transports in tests)
        """
        if not self.service_name:
            raise ValueError(f"{self.__class__.__name__} must define 'service_name'")

        if config is None:
            from core.config import get_settings
            config = get_settings().services

        if base_url:
            self.base_url = base_url.rstrip('/')
        else:
            self.base_url = getattr(config, self.url_setting).rstrip('/')

        self.client = httpx.AsyncClient(
            timeout=timeout or config.request_timeout,
            headers=self._build_default_headers(config),
            transport=transport,
        )

        logger.debug(f"Initialized {self.service_name} client: {self.base_url}")

    def _build_default_headers(self, config: "ServiceConfig") -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": f"billing-internal-client/{config.service_name}",
        }

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()
        logger.debug(f"Closed {self.service_name} client")

    # ========================================
    # HTTP method wrappers
    # ========================================

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        return await self.client.get(url, params=params, headers=headers)

    async def post(
        self,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        return await self.client.post(url, json=json, headers=headers)

    async def delete(
        self,
        path: str,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        return await self.client.delete(url, headers=headers)

    async def health_check(self) -> bool:
        """
        Health check

        Returns:
            Whether the service responded 200 on /health
        """
        try:
            response = await self.get("/health")
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"{self.service_name} health check failed: {e}")
            return False


__all__ = ["BaseServiceClient"]
