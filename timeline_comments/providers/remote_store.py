"""REST client for the remote JSON document store.

Paths are hierarchical (``comments/{contentKey}``, ``likes/{id}/{actorId}``)
and map to ``{base_url}/{path}.json``. Every call may carry an opaque auth
token, sent as the ``auth`` query parameter.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from timeline_comments.core.errors import RemoteAuthError, RemoteUnavailable

logger = logging.getLogger(__name__)

# Retry settings for 429 responses
MAX_RETRIES = 3
INITIAL_DELAY = 1.0  # seconds
MAX_DELAY = 30.0  # seconds

DEFAULT_TIMEOUT = 15.0


class RemoteStoreClient:
    """Async client for keyed document operations (GET/PUT/POST/DELETE)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = INITIAL_DELAY,
    ) -> None:
        if not base_url:
            raise ValueError("Remote store base URL is required")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteStoreClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @staticmethod
    def _url(path: str) -> str:
        return f"/{path.strip('/')}.json"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        auth: str | None = None,
    ) -> Any:
        """Send one request, retrying 429 with exponential backoff.

        Returns:
            Decoded JSON body (``None`` for an absent document).

        Raises:
            RemoteAuthError: On 401/403.
            RemoteUnavailable: On transport errors, timeouts, other HTTP errors
                or an undecodable body.
        """
        client = await self._get_client()
        params = {"auth": auth} if auth else None
        content = json.dumps(body) if body is not None else None
        delay = self._base_delay

        for attempt in range(self._max_retries + 1):
            try:
                resp = await client.request(method, self._url(path), params=params, content=content)
            except httpx.TimeoutException as e:
                raise RemoteUnavailable(f"{method} {path} timed out") from e
            except httpx.HTTPError as e:
                raise RemoteUnavailable(f"{method} {path} failed: {e}") from e

            if resp.status_code in (401, 403):
                raise RemoteAuthError(f"{method} {path} rejected credentials", resp.status_code)

            if resp.status_code == 429:
                if attempt == self._max_retries:
                    raise RemoteUnavailable(
                        f"Rate limit exceeded after {self._max_retries} retries", 429
                    )
                retry_after = resp.headers.get("Retry-After")
                try:
                    wait_time = float(retry_after) if retry_after else delay
                except ValueError:
                    wait_time = delay
                wait_time = min(wait_time, MAX_DELAY)
                logger.warning(
                    f"Remote store rate limited (429). Waiting {wait_time:.1f}s "
                    f"(attempt {attempt + 1}/{self._max_retries + 1})"
                )
                await asyncio.sleep(wait_time)
                delay = min(delay * 2, MAX_DELAY)
                continue

            if resp.status_code >= 400:
                raise RemoteUnavailable(
                    f"{method} {path} returned HTTP {resp.status_code}", resp.status_code
                )

            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError as e:
                raise RemoteUnavailable(f"{method} {path} returned invalid JSON") from e

        raise RemoteUnavailable("Rate limit handling failed")

    async def get(self, path: str, *, auth: str | None = None) -> Any:
        return await self._request("GET", path, auth=auth)

    async def put(self, path: str, body: Any, *, auth: str | None = None) -> Any:
        return await self._request("PUT", path, body=body, auth=auth)

    async def post(self, path: str, body: Any, *, auth: str | None = None) -> str:
        """Append a child document and return its generated id."""
        data = await self._request("POST", path, body=body, auth=auth)
        if not isinstance(data, dict) or not data.get("name"):
            raise RemoteUnavailable(f"POST {path} did not return a generated id")
        return str(data["name"])

    async def delete(self, path: str, *, auth: str | None = None) -> None:
        await self._request("DELETE", path, auth=auth)
