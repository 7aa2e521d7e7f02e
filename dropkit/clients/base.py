"""Base HTTP client for dropkit's node access.

Provides:
- Rate limiting (token bucket)
- Automatic retry with exponential backoff on 429 / 5xx / connection errors
- TTL response cache for immutable reads (used by EvmClient)
- JSON-RPC envelope handling with endpoint fallback
- Structured error handling (APIError)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

log = logging.getLogger("clients.base")


@dataclass
class RateLimiter:
    """Simple token-bucket rate limiter."""

    max_per_second: float
    _tokens: float = field(init=False)
    _last_refill: float = field(init=False)

    def __post_init__(self) -> None:
        self._tokens = self.max_per_second
        self._last_refill = time.monotonic()

    def acquire(self) -> float:
        """Take a token. Returns the wait in seconds (0 if immediate)."""
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.max_per_second, self._tokens + elapsed * self.max_per_second)
        self._last_refill = now

        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0

        return (1.0 - self._tokens) / self.max_per_second


@dataclass
class CacheEntry:
    data: Any
    expires_at: float


class ResponseCache:
    """In-memory TTL cache for RPC results."""

    def __init__(self) -> None:
        self._store: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if time.monotonic() > entry.expires_at:
            del self._store[key]
            return None
        return entry.data

    def set(self, key: str, data: Any, ttl_seconds: float) -> None:
        self._store[key] = CacheEntry(data=data, expires_at=time.monotonic() + ttl_seconds)

    def clear(self) -> None:
        self._store.clear()


class APIError(Exception):
    """Structured API error."""

    def __init__(self, message: str, status_code: int = 0, provider: str = "", retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable


class RPCError(APIError):
    """Node answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: int = 0, provider: str = "", data: Any = None):
        # Range / result-size limits come back as RPC errors and clear up
        # with a smaller query, so they count as retryable.
        super().__init__(message, status_code=200, provider=provider, retryable=True)
        self.code = code
        self.data = data


class BaseClient:
    """HTTP client with retry and rate limiting.

    Usage:
        client = BaseClient(
            base_url="https://rpc.example.org",
            rate_limit=5.0,  # 5 req/sec
            timeout=10.0,
        )
        data = await client.post("", json_data={...})
    """

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        rate_limit: float = 10.0,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        backoff_multiplier: float = 2.0,
        provider_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider_name = provider_name
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.backoff_multiplier = backoff_multiplier
        self._rate_limiter = RateLimiter(max_per_second=rate_limit)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def post(
        self,
        path: str,
        json_data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """POST request with rate limiting and retry."""
        return await self._request("POST", path, json_data=json_data, headers=headers)

    async def _request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Execute request with retry and backoff."""
        last_error: APIError | None = None
        delay = self.backoff_base

        for attempt in range(self.max_retries + 1):
            wait = self._rate_limiter.acquire()
            if wait > 0:
                await asyncio.sleep(wait)

            try:
                response = await self._client.request(
                    method,
                    path,
                    json=json_data,
                    headers=headers,
                )

                if response.status_code == 429:
                    delay = float(response.headers.get("retry-after", delay))
                    raise APIError(
                        f"Rate limited by {self.provider_name}",
                        status_code=429,
                        provider=self.provider_name,
                        retryable=True,
                    )

                if response.status_code >= 500:
                    raise APIError(
                        f"Server error from {self.provider_name}: {response.status_code}",
                        status_code=response.status_code,
                        provider=self.provider_name,
                        retryable=True,
                    )

                if response.status_code >= 400:
                    raise APIError(
                        f"Client error from {self.provider_name}: {response.status_code} {response.text[:200]}",
                        status_code=response.status_code,
                        provider=self.provider_name,
                        retryable=False,
                    )

                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = APIError(
                    f"Connection error to {self.provider_name}: {e}",
                    provider=self.provider_name,
                    retryable=True,
                )
            except APIError as e:
                last_error = e
                if not e.retryable:
                    raise

            if attempt < self.max_retries:
                log.debug(
                    "%s %s failed (%s), retry %s/%s in %.1fs",
                    method, self.provider_name, last_error, attempt + 1, self.max_retries, delay,
                )
                await asyncio.sleep(min(delay, self.backoff_max))
                delay *= self.backoff_multiplier

        raise last_error or APIError(f"Request failed after {self.max_retries} retries")


class RPCFallbackClient:
    """JSON-RPC over a chain of endpoints.

    Tries each endpoint in order and returns the first answer. Transport
    failures and RPC error objects both move on to the next endpoint.
    """

    def __init__(
        self,
        endpoints: list[dict[str, Any]],
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")
        self._ids = itertools.count(1)
        self._clients: list[BaseClient] = []
        for ep in endpoints:
            self._clients.append(
                BaseClient(
                    base_url=ep["url"],
                    rate_limit=ep.get("rate_limit", 10.0),
                    timeout=ep.get("timeout_seconds", 10.0),
                    provider_name=ep.get("provider", "unknown"),
                    max_retries=ep.get("max_retries", 1),
                    backoff_base=ep.get("backoff_base", 1.0),
                    transport=transport,
                )
            )

    async def call(self, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC call; returns the `result` field."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        errors: list[str] = []
        last_error: APIError | None = None

        for client in self._clients:
            try:
                body = await client.post("", json_data=payload)
            except APIError as e:
                errors.append(f"{client.provider_name}: {e}")
                last_error = e
                continue

            if isinstance(body, dict) and body.get("error"):
                err = body["error"]
                last_error = RPCError(
                    f"{method} failed on {client.provider_name}: {err.get('message', err)}",
                    code=err.get("code", 0),
                    provider=client.provider_name,
                    data=err.get("data"),
                )
                errors.append(str(last_error))
                continue

            return body.get("result") if isinstance(body, dict) else body

        if len(self._clients) == 1 and last_error is not None:
            raise last_error
        raise APIError(
            f"All RPC endpoints failed: {'; '.join(errors)}",
            provider="rpc_fallback",
            retryable=bool(last_error and last_error.retryable),
        )

    async def close(self) -> None:
        for client in self._clients:
            await client.close()
