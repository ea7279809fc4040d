"""OAuth2 refresh-token provider shared by the consumer-drive backends"""

import asyncio
import time

import httpx

from file_storage.exceptions import PermissionDenied, Transient
from logger import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"  # noqa: S105


class OAuthTokenProvider:
    """
    Keeps a valid access token for one backend.

    Refreshes with the refresh-token grant when the cached token is missing or
    expires within ``refresh_buffer`` seconds. Concurrent callers share one
    refresh through the lock.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        access_token: str | None = None,
        expires_at: float | None = None,
        scope: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.scope = scope
        self._cached_token = access_token
        self._token_expires_at = expires_at
        self._refresh_buffer = 60  # refresh 60 seconds before expiry
        self._lock = asyncio.Lock()
        self._http_client = http_client

    def _is_token_valid(self) -> bool:
        if not self._cached_token:
            return False
        if self._token_expires_at is None:
            # Token supplied without expiry: trust it until the backend rejects it
            return True
        return time.time() < (self._token_expires_at - self._refresh_buffer)

    def invalidate(self) -> None:
        """Drop the cached token (after a 401 from the backend)."""
        self._cached_token = None
        self._token_expires_at = None

    async def get_token(self) -> str:
        if self._is_token_valid():
            return self._cached_token  # type: ignore[return-value]

        async with self._lock:
            # Another task may have refreshed while we waited
            if self._is_token_valid():
                return self._cached_token  # type: ignore[return-value]
            await self._refresh()
            return self._cached_token  # type: ignore[return-value]

    async def _refresh(self) -> None:
        if not self.refresh_token:
            raise PermissionDenied("Access token expired and no refresh token configured")

        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
        }
        if self.scope:
            data["scope"] = self.scope

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise Transient(f"Token refresh failed: {e}") from e

        if response.status_code >= 500:
            raise Transient(f"Token endpoint error: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PermissionDenied(f"Token refresh rejected: HTTP {response.status_code} {response.text[:200]}")

        payload = response.json()
        self._cached_token = payload["access_token"]
        self._token_expires_at = time.time() + int(payload.get("expires_in", 3600))
        # Some providers rotate refresh tokens
        if payload.get("refresh_token"):
            self.refresh_token = payload["refresh_token"]
        logger.debug(f"Access token refreshed: expires_in={payload.get('expires_in', 3600)}s")
