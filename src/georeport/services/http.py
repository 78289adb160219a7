import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 12000


class FetchTimeoutError(TimeoutError):
    """No response from the upstream within the configured duration."""

    def __init__(self, url: str, timeout_ms: int) -> None:
        super().__init__(f"Timeout after {timeout_ms} ms requesting {url}")
        self.url = url
        self.timeout_ms = timeout_ms


class FetchGateway:
    """Bounded-timeout HTTP calls shared by all source adapters.

    The gateway does not retry. Retry policy (mirror rotation, pausing on
    HTTP 429) belongs to the adapter that knows the upstream.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._client = client
        self._default_timeout_ms = default_timeout_ms

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def fetch(
        self,
        method: str,
        url: str,
        *,
        timeout_ms: int | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue one request; raise FetchTimeoutError if it does not complete in time.

        Args:
            method: HTTP method (str).
            url: Target URL (str).
            timeout_ms: Per-call override of the default timeout (int, optional).
            **kwargs: Forwarded to ``httpx.AsyncClient.request`` (params, data, headers...).

        Returns:
            httpx.Response: The raw response, whatever its status code.
        """
        timeout_ms = timeout_ms or self._default_timeout_ms
        seconds = timeout_ms / 1000
        logger.debug("%s %s (timeout=%sms)", method, url, timeout_ms)
        try:
            # wait_for cancels the pending request when the deadline passes.
            return await asyncio.wait_for(
                self._client.request(method, url, timeout=seconds, **kwargs),
                timeout=seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning("Upstream timeout for %s after %sms", url, timeout_ms)
            raise FetchTimeoutError(url, timeout_ms) from e

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.fetch("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.fetch("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_fetch_gateway(user_agent: str, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> FetchGateway:
    """Create a gateway around a fresh AsyncClient identifying itself with user_agent."""
    client = httpx.AsyncClient(
        headers={"User-Agent": user_agent, "Accept": "application/json"},
        follow_redirects=True,
    )
    return FetchGateway(client, default_timeout_ms=default_timeout_ms)
