"""
Async HTTP client wrapper for upstream fixture requests.
Performs exactly one attempt per call; failures surface as typed source errors
so that the retry decision stays with the feed orchestrator.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.errors import MalformedResponse, NetworkError, RateLimited
from shared.utils.logging import get_logger
from shared.utils.metrics import SOURCE_LATENCY, SOURCE_REQUESTS

logger = get_logger(__name__)


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ProviderHTTPClient:
    """
    Async JSON client for one upstream fixture provider.
    Handles timeouts and error mapping, and records metrics per request.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.provider_request_timeout_s
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        endpoint: str = "unknown",
    ) -> Any:
        """
        Perform a single GET and decode the JSON body.

        Args:
            path: API path relative to base_url.
            params: Query parameters.
            endpoint: Endpoint label for metrics and errors.

        Returns:
            The decoded JSON document.

        Raises:
            RateLimited: On HTTP 429.
            NetworkError: On timeouts, transport failures and other non-2xx answers.
            MalformedResponse: If the body is not JSON.
        """
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        start_time = time.perf_counter()
        status = "unknown"
        try:
            try:
                resp = await self._client.get(path, params=params)
            except httpx.TimeoutException as exc:
                status = "timeout"
                logger.warning("provider_timeout", provider=self._provider, endpoint=endpoint)
                raise NetworkError(f"Timeout calling {endpoint}", source=endpoint) from exc
            except httpx.TransportError as exc:
                status = "transport_error"
                logger.warning(
                    "provider_transport_error",
                    provider=self._provider,
                    endpoint=endpoint,
                    error=str(exc),
                )
                raise NetworkError(f"Transport error calling {endpoint}: {exc}", source=endpoint) from exc

            status = str(resp.status_code)
            if resp.status_code == 429:
                logger.info("provider_rate_limited", provider=self._provider, endpoint=endpoint)
                raise RateLimited(source=endpoint, retry_after=_retry_after(resp))
            if resp.status_code >= 400:
                logger.warning(
                    "provider_http_error",
                    provider=self._provider,
                    endpoint=endpoint,
                    status=resp.status_code,
                )
                raise NetworkError(
                    f"HTTP {resp.status_code} from {endpoint}",
                    source=endpoint,
                    status=resp.status_code,
                )

            try:
                data = resp.json()
            except ValueError as exc:
                status = "malformed"
                raise MalformedResponse(f"Non-JSON body from {endpoint}", source=endpoint) from exc

            logger.debug(
                "provider_request_success",
                provider=self._provider,
                endpoint=endpoint,
                status=resp.status_code,
                latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            return data
        finally:
            SOURCE_REQUESTS.labels(endpoint=endpoint, status=status).inc()
            SOURCE_LATENCY.labels(endpoint=endpoint).observe(time.perf_counter() - start_time)
