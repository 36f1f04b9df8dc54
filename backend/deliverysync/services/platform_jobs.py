"""Client for the external job runner (connectivity tests, batch menu sync)."""

import logging
from typing import Any, Dict, Optional

import httpx

from deliverysync.services.delivery.exceptions import DeliveryIntegrationError

logger = logging.getLogger(__name__)

TEST_PLATFORM_CONNECTION = "test-platform-connection"
SYNC_MENU = "sync-menu"


class PlatformJobError(DeliveryIntegrationError):
    def __init__(self, job: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"Job {job} failed: {message}")
        self.job = job
        self.message = message
        self.status_code = status_code


class PlatformJobClient:
    """Invokes named jobs with ``POST {base_url}/{name}`` and a bearer service key."""

    def __init__(
        self,
        base_url: Optional[str],
        service_key: str = "",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def invoke(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured:
            raise PlatformJobError(name, "job runner URL is not configured")

        headers = {"Content-Type": "application/json"}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/{name}", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Job {name} request failed: {e!r}")
            raise PlatformJobError(name, str(e) or type(e).__name__) from e

        if not resp.is_success:
            logger.error(f"Job {name} returned {resp.status_code}: {resp.text[:500]}")
            raise PlatformJobError(name, resp.text or resp.reason_phrase, resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise PlatformJobError(name, "response is not JSON", resp.status_code) from e
        return data if isinstance(data, dict) else {"result": data}
