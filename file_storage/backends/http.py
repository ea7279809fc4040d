"""Shared httpx plumbing for REST-based storage backends"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from file_storage.backends.base import StorageBackend
from file_storage.backends.oauth import OAuthTokenProvider
from file_storage.exceptions import Transient, error_from_status
from file_storage.streams import DEFAULT_CHUNK_SIZE
from logger import get_logger

logger = get_logger(__name__)


class HTTPStorageBackend(StorageBackend):
    """
    Base for backends reached over HTTP.

    Owns one ``httpx.AsyncClient`` for the adapter lifetime (connection pool
    shared by concurrent operations). Tests inject a client built on
    ``httpx.MockTransport``.
    """

    def __init__(
        self,
        root_path: str = "/",
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 60.0,
        connect_timeout: float = 15.0,
        token_provider: OAuthTokenProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(root_path, chunk_size)
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.token_provider = token_provider
        self._client = http_client

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=self.timeout, connect=self.connect_timeout),
            follow_redirects=True,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        if self.token_provider is None:
            return {}
        return {"Authorization": f"Bearer {await self.token_provider.get_token()}"}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:300] or response.reason_phrase
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or error)
        if error:
            return str(error)
        return str(data)[:300]

    async def _send(self, request_kwargs: dict[str, Any], path: str | None, stream: bool) -> httpx.Response:
        for attempt in (1, 2):
            headers = dict(request_kwargs.get("headers") or {})
            headers.update(await self._auth_headers())
            request = self.client.build_request(**{**request_kwargs, "headers": headers})
            try:
                response = await self.client.send(request, stream=stream)
            except httpx.TransportError as e:
                raise Transient(f"HTTP request failed: {e}", path) from e

            if response.status_code == 401 and self.token_provider is not None and attempt == 1:
                await response.aclose()
                self.token_provider.invalidate()
                continue
            break

        if response.status_code >= 400:
            if stream:
                await response.aread()
                await response.aclose()
            message = f"HTTP {response.status_code}: {self._error_message(response)}"
            raise error_from_status(response.status_code, message, path)
        return response

    async def _request(self, method: str, url: str, path: str | None = None, **kwargs) -> httpx.Response:
        """Make an authenticated request; status >= 400 raises a taxonomy error."""
        return await self._send({"method": method, "url": url, **kwargs}, path, stream=False)

    async def _request_json(self, method: str, url: str, path: str | None = None, **kwargs) -> dict[str, Any]:
        response = await self._request(method, url, path, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _stream(self, method: str, url: str, path: str | None = None, **kwargs) -> AsyncIterator[bytes]:
        """Open a streaming response; errors raise here, before any chunk."""
        response = await self._send({"method": method, "url": url, **kwargs}, path, stream=True)
        return self._iter_response(response, path)

    async def _iter_response(self, response: httpx.Response, path: str | None) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self.chunk_size):
                yield chunk
        except httpx.TransportError as e:
            raise Transient(f"Download interrupted: {e}", path) from e
        finally:
            await response.aclose()


def parse_timestamp(value: str | None) -> float:
    """Epoch seconds from an ISO-8601 or RFC 1123 timestamp; 0.0 when absent or unparseable."""
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError):
        return 0.0
