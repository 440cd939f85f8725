"""Broker management HTTP API client.

Covers the subset of the management API used for retry configuration:
- Reachability check (``/api/overview``)
- Vhost-scoped operator policies
- Global parameters (custom JSON key-value store)

Failures are logged and reported as ``False``/``None``; nothing raised
by the HTTP layer escapes this client.
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from src.redelivery.config import ManagementConfig
from src.redelivery.exceptions import ManagementAPIError

logger = logging.getLogger(__name__)


class ManagementClient:
    """Async client for the broker management API.

    Attributes:
        config: Management endpoint and credentials
        http_client: Underlying HTTP client (Basic auth)
    """

    def __init__(
        self,
        config: ManagementConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize management client.

        Args:
            config: Management endpoint and credentials
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        self.http_client = httpx.AsyncClient(
            base_url=config.url,
            auth=httpx.BasicAuth(config.username, config.password),
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "ManagementClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def encoded_vhost(self) -> str:
        return quote(self.config.vhost, safe="")

    async def check_enabled(self) -> bool:
        """Check whether the management API is reachable and authorized."""
        try:
            response = await self.http_client.get("/api/overview")
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Management API not accessible: {e}")
            return False

    async def put_operator_policy(self, policy: Dict[str, Any]) -> bool:
        """Create or update an operator policy.

        Args:
            policy: Policy with name, pattern, definition, apply-to, priority

        Returns:
            True if the broker accepted the policy
        """
        name = policy["name"]
        body = {
            "pattern": policy["pattern"],
            "definition": policy["definition"],
            "priority": policy.get("priority", 0),
            "apply-to": policy["apply-to"],
        }
        try:
            await self._request("PUT", self._policy_path(name), json=body)
        except ManagementAPIError as e:
            logger.error(f"Failed to set operator policy {name}: {e}")
            return False

        logger.info(f"Set operator policy: {name}")
        return True

    async def get_operator_policy(self, name: str) -> Optional[Dict[str, Any]]:
        """Fetch an operator policy, or None if it does not exist."""
        try:
            response = await self._request("GET", self._policy_path(name), not_found_ok=True)
        except ManagementAPIError as e:
            logger.error(f"Failed to get operator policy {name}: {e}")
            return None
        if response is None:
            return None
        return response.json()

    async def delete_operator_policy(self, name: str) -> bool:
        """Delete an operator policy; a missing policy counts as deleted."""
        try:
            await self._request("DELETE", self._policy_path(name), not_found_ok=True)
        except ManagementAPIError as e:
            logger.error(f"Failed to delete operator policy {name}: {e}")
            return False

        logger.info(f"Deleted operator policy: {name}")
        return True

    async def set_parameter(self, name: str, value: Any) -> bool:
        """Create or update a global parameter holding ``value``."""
        try:
            await self._request("PUT", self._parameter_path(name), json={"value": value})
        except ManagementAPIError as e:
            logger.error(f"Failed to set parameter {name}: {e}")
            return False

        logger.info(f"Set parameter: {name}")
        return True

    async def get_parameter(self, name: str) -> Optional[Any]:
        """Fetch a global parameter's value, or None if it does not exist."""
        try:
            response = await self._request("GET", self._parameter_path(name), not_found_ok=True)
        except ManagementAPIError as e:
            logger.error(f"Failed to get parameter {name}: {e}")
            return None
        if response is None:
            return None
        return response.json().get("value")

    async def delete_parameter(self, name: str) -> bool:
        """Delete a global parameter; a missing parameter counts as deleted."""
        try:
            await self._request("DELETE", self._parameter_path(name), not_found_ok=True)
        except ManagementAPIError as e:
            logger.error(f"Failed to delete parameter {name}: {e}")
            return False

        logger.info(f"Deleted parameter: {name}")
        return True

    def _policy_path(self, name: str) -> str:
        return f"/api/operator-policies/{self.encoded_vhost}/{quote(name, safe='')}"

    def _parameter_path(self, name: str) -> str:
        return f"/api/global-parameters/{quote(name, safe='')}"

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        not_found_ok: bool = False,
    ) -> Optional[httpx.Response]:
        """Send a request and raise on failure.

        Returns:
            Response, or None on 404 when ``not_found_ok``

        Raises:
            ManagementAPIError: On transport errors and non-2xx responses
        """
        try:
            response = await self.http_client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise ManagementAPIError(f"{method} {path} timed out", original=e) from e
        except httpx.HTTPError as e:
            raise ManagementAPIError(f"{method} {path} failed", original=e) from e

        if response.status_code == 404 and not_found_ok:
            return None
        if not response.is_success:
            raise ManagementAPIError(
                f"{method} {path} returned {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response
