"""
Shared request plumbing for provider HTTP clients.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from meeting_pipeline.exceptions import InvalidProviderResponse
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.monitoring import provider_request_duration, provider_requests_total
from meeting_pipeline.utils import handle_http_error

logger = get_logger(__name__)


class ProviderClient:
    """Base for httpx-backed provider clients."""

    PROVIDER = "provider"

    def __init__(
        self,
        timeout: float = 30.0,
        limiter: Optional[Callable[[], Awaitable[None]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Per-request timeout in seconds
            limiter: Rate limit acquisition coroutine, e.g. RateLimiters.acquire_jira_limit
            transport: Custom httpx transport (tests pass httpx.MockTransport)
        """
        self.timeout = timeout
        self._limiter = limiter
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        """
        Perform one rate-limited request.

        Raises:
            ProviderError: Mapped from the HTTP status or transport failure
        """
        start_time = time.time()
        if self._limiter is not None:
            await self._limiter()

        headers = self._headers()
        headers.update(kwargs.pop("headers", {}))
        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"{self.PROVIDER}_request_failed", operation=operation, error=str(e))
            raise handle_http_error(e, self.PROVIDER, operation)

        provider_requests_total.labels(provider=self.PROVIDER, operation=operation, status="success").inc()
        provider_request_duration.labels(provider=self.PROVIDER, operation=operation).observe(
            time.time() - start_time
        )
        return response

    def _json(self, response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError:
            raise InvalidProviderResponse(
                f"{self.PROVIDER} {operation} returned non-JSON body",
                status_code=response.status_code,
                provider=self.PROVIDER,
            )
