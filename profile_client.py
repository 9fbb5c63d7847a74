"""HTTP client writing a user's timezone to the remote profile.

This is the remote writer the SyncQueue and TimezoneSyncController use on
a device. HTTP failures are mapped onto the store error taxonomy so the
queue can tell "retry later" from "never going to work".
"""

from typing import Optional

import httpx

from config import settings
from errors import PERMANENT_HTTP_STATUSES, PermanentStoreError, TransientStoreError
from logger_config import setup_logger

logger = setup_logger(__name__, 'profile_client.log')


class ProfileClient:
    """Writes profile timezones through the REST API.

    Args:
        base_url: API base URL (defaults to settings.REMOTE_API_URL)
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests pass a MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def write_timezone(self, owner_id: str, timezone: str) -> dict:
        """PUT the timezone onto `owner_id`'s profile without recomputing reminders.

        Raises:
            PermanentStoreError: 401/403/404 responses
            TransientStoreError: Network errors, timeouts and other failures
        """
        url = f"{self.base_url}/users/{owner_id}/timezone"
        payload = {"timezone": timezone, "runRecompute": False}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.put(url, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout writing timezone for {owner_id}")
            raise TransientStoreError(f"timeout: {e}", code="deadline-exceeded") from e
        except httpx.RequestError as e:
            logger.error(f"Network error writing timezone for {owner_id}: {str(e)}")
            raise TransientStoreError(f"network error: {e}", code="unavailable") from e

        if response.status_code in PERMANENT_HTTP_STATUSES:
            code = {401: "unauthenticated", 403: "permission-denied", 404: "not-found"}[response.status_code]
            logger.error(f"Profile write for {owner_id} rejected: {response.status_code}")
            raise PermanentStoreError(f"{code}: {response.text}", code=code)
        if response.status_code >= 400:
            logger.error(
                f"Profile write for {owner_id} failed. "
                f"Status: {response.status_code}, Response: {response.text}"
            )
            raise TransientStoreError(
                f"HTTP {response.status_code}: {response.text}", code="unavailable"
            )

        logger.info(f"Profile timezone for {owner_id} set to {timezone}")
        return response.json()

    async def __call__(self, owner_id: str, timezone: str) -> None:
        await self.write_timezone(owner_id, timezone)
