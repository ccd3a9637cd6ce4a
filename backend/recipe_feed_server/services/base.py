from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar, cast

import httpx
from pydantic import TypeAdapter

from recipe_feed_server.core.errors import ExhaustedRetriesError, FatalRequestError
from recipe_feed_server.services.retry import RetryPolicy, execute

T = TypeVar("T")

_log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)
_DEFAULT_HEADERS: Mapping[str, str] = {
    "User-Agent": "recipe-feed-server/1.0",
}


def _coerce_timeout(value: httpx.Timeout | float | int | None) -> httpx.Timeout:
    if isinstance(value, httpx.Timeout):
        return value
    if isinstance(value, (int, float)):
        return httpx.Timeout(value)
    return _DEFAULT_TIMEOUT


class HTTPClient:
    """Async HTTP helper with optional Pydantic model decoding."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: httpx.Timeout | float | int | None = None,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._timeout = _coerce_timeout(timeout)
        merged = dict(_DEFAULT_HEADERS)
        if headers:
            merged.update(headers)
        self._headers = merged
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        base_url=self._base_url,
                        timeout=self._timeout,
                        headers=self._headers,
                        transport=self._transport,
                    )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str = "",
        *,
        response_model: Any | None = None,
        **kwargs: Any,
    ) -> Any:
        """Send a request; non-2xx raises ``httpx.HTTPStatusError``.

        With ``response_model`` the JSON body is validated into that type,
        otherwise the decoded JSON (or None for an empty body) is returned.
        """
        client = await self._get_client()
        url = path if path.startswith(("http://", "https://", "/")) else f"/{path}"
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()

        if response.status_code == 204 or not response.content:
            payload = None
        else:
            payload = response.json()

        if response_model is None:
            return payload
        if payload is None:
            raise ValueError("Expected JSON payload but response was empty")
        adapter = response_model if isinstance(response_model, TypeAdapter) else TypeAdapter(response_model)
        return cast(T, adapter.validate_python(payload))

    async def get(self, path: str = "", *, params: Mapping[str, Any] | None = None, response_model: Any | None = None, **kwargs: Any) -> Any:
        return await self.request("GET", path, params=params, response_model=response_model, **kwargs)

    async def post(self, path: str = "", *, json: Any = None, response_model: Any | None = None, **kwargs: Any) -> Any:
        return await self.request("POST", path, json=json, response_model=response_model, **kwargs)


@dataclass(slots=True)
class APIUsageMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_tokens: int = 0
    last_call_timestamp: float = 0.0

    def as_log_fields(self) -> dict[str, int]:
        fields = asdict(self)
        fields.pop('last_call_timestamp', None)
        return fields


class RemoteServiceBase:
    """Base for remote AI services: shared HTTP client, retry policy, usage counters.

    Every outbound call goes through :meth:`call`, which runs it under the
    retry wrapper and tracks success/failure counts.
    """

    name: str = "remote"
    server_url: str | None = None
    request_timeout: httpx.Timeout | float | int | None = None

    def __init__(
        self,
        *,
        server_url: str | None = None,
        api_key: str | None = None,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if server_url:
            self.server_url = server_url
        self.api_key = api_key
        self.policy = policy or RetryPolicy.from_settings()
        self.usage = APIUsageMetrics()
        self._transport = transport
        self._sleep = sleep
        self._http_client: HTTPClient | None = None

    def request_headers(self) -> Mapping[str, str]:
        """Override to provide extra headers for the HTTP client."""
        return {}

    @property
    def http(self) -> HTTPClient:
        if not self.server_url:
            raise RuntimeError(f"Service '{self.name}' does not define a server_url")
        if self._http_client is None:
            self._http_client = HTTPClient(
                self.server_url,
                timeout=self.request_timeout,
                headers=self.request_headers(),
                transport=self._transport,
            )
        return self._http_client

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        shrink: Callable[[], bool] | None = None,
        label: str | None = None,
    ) -> T:
        async def _tracked() -> T:
            self.usage.total_calls += 1
            self.usage.last_call_timestamp = time.time()
            try:
                result = await operation()
            except Exception:
                self.usage.failed_calls += 1
                raise
            self.usage.successful_calls += 1
            return result

        try:
            return await execute(
                _tracked,
                self.policy,
                shrink=shrink,
                sleep=self._sleep,
                label=label or self.name,
            )
        except (FatalRequestError, ExhaustedRetriesError) as exc:
            await self.on_call_failed(exc)
            raise

    async def on_call_failed(self, exc: Exception) -> None:
        """Hook for subclasses to record terminal failures."""
        _log.error("%s call failed permanently: %s", self.name, exc)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.close()
            self._http_client = None
