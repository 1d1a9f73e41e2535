"""
Catalog Service Client

Client for fetching package and price definitions.
"""

import logging
from typing import Optional

from core.service_client_base import BaseServiceClient

from ..models import Package

logger = logging.getLogger(__name__)


class CatalogClient(BaseServiceClient):
    """Client for the package catalog"""

    service_name = "catalog_service"
    url_setting = "catalog_service_url"

    async def get_package(self, code: str) -> Optional[Package]:
        """Get a package by code"""
        try:
            response = await self.get(f"/api/v1/packages/{code}")
            if response.status_code == 200:
                data = response.json()
                return Package(**data.get("package", data))
            else:
                logger.warning(f"Package {code} not found: {response.status_code}")
                return None
        except Exception as e:
            logger.error(f"Error fetching package {code}: {e}")
            return None


__all__ = ["CatalogClient"]
