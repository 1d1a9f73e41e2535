"""
Entitlement Service Client

Client for workspace package assignments: provisioning, revocation and the
suspend / reactivate / expire side effects of the billing lifecycle.
"""

import logging
from typing import Any, Dict, Optional

from core.service_client_base import BaseServiceClient

from ..models import PackageAssignment

logger = logging.getLogger(__name__)


class EntitlementClient(BaseServiceClient):
    """Client for the entitlement service"""

    service_name = "entitlement_service"
    url_setting = "entitlement_service_url"

    async def get_assignment(self, assignment_id: str) -> Optional[PackageAssignment]:
        try:
            response = await self.get(f"/api/v1/assignments/{assignment_id}")
            if response.status_code == 200:
                data = response.json()
                return PackageAssignment(**data.get("assignment", data))
            logger.warning(f"Assignment {assignment_id} not found: {response.status_code}")
            return None
        except Exception as e:
            logger.error(f"Error fetching assignment {assignment_id}: {e}")
            return None

    async def provision_package(
        self,
        workspace_id: str,
        package_code: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[PackageAssignment]:
        """Grant a package to a workspace, returning the new assignment"""
        try:
            response = await self.post(
                f"/api/v1/workspaces/{workspace_id}/packages",
                json={"package_code": package_code, "context": context or {}},
            )
            if response.status_code in (200, 201):
                data = response.json()
                return PackageAssignment(**data.get("assignment", data))
            logger.warning(
                f"Failed to provision {package_code} for workspace {workspace_id}: {response.status_code}"
            )
            return None
        except Exception as e:
            logger.error(f"Error provisioning {package_code} for workspace {workspace_id}: {e}")
            return None

    async def revoke_package(self, workspace_id: str, package_code: str) -> bool:
        return await self._command(
            "delete", f"/api/v1/workspaces/{workspace_id}/packages/{package_code}", None,
            f"revoke {package_code} for workspace {workspace_id}",
        )

    async def suspend_assignment(self, assignment_id: str, reason: str) -> bool:
        return await self._command(
            "post", f"/api/v1/assignments/{assignment_id}/suspend", {"reason": reason},
            f"suspend assignment {assignment_id}",
        )

    async def reactivate_assignment(self, assignment_id: str, reason: str) -> bool:
        return await self._command(
            "post", f"/api/v1/assignments/{assignment_id}/reactivate", {"reason": reason},
            f"reactivate assignment {assignment_id}",
        )

    async def expire_assignment(self, assignment_id: str) -> bool:
        return await self._command(
            "post", f"/api/v1/assignments/{assignment_id}/expire", {},
            f"expire assignment {assignment_id}",
        )

    async def _command(self, method: str, path: str, payload: Optional[Dict[str, Any]], action: str) -> bool:
        try:
            if method == "delete":
                response = await self.delete(path)
            else:
                response = await self.post(path, json=payload)
            if response.status_code in (200, 201, 204):
                return True
            logger.warning(f"Failed to {action}: {response.status_code}")
            return False
        except Exception as e:
            logger.error(f"Error trying to {action}: {e}")
            return False


__all__ = ["EntitlementClient"]
