"""Source adapter contract and shared HTTP client management.

Every price source implements :class:`SourceAdapter`. The estimator only talks
to adapters through :meth:`SourceAdapter.fetch`, which enforces the caller's
deadline, the adapter's own rate limit and pair applicability, and reports
failures as typed :class:`AdapterError` subclasses.

A shared httpx.AsyncClient is used across all HTTP adapters to avoid
connection overhead.

.. code-block:: python

    @register_adapter
    class MyAdapter(SourceAdapter):
        name = "myadapter"
        source_class = "centralized"
        chains = frozenset({1})

        async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
            response = await self._get("https://api.example.com/price", params={...})
            data = self._json(response)
            return self._raw_quote(pair, QuoteConvention.DIRECT,
                                   {"price": data["price"]}, requested_at, payload=data)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, ClassVar

import httpx

from ..PriceObservation import QuoteConvention, RawQuote
from ..TokenPair import TokenPair

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """Base exception for per-source failures.

    :ivar source: Name of the adapter that failed.
    """

    kind: ClassVar[str] = "error"

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(message)


class AdapterTimeout(AdapterError):
    """Raised when an adapter cannot answer before its deadline."""

    kind = "timeout"


class RateLimited(AdapterError):
    """Raised when the provider or the local limiter refuses a request.

    :ivar retry_after: Seconds to wait before retrying, if known.
    """

    kind = "rate_limited"

    def __init__(self, source: str, retry_after: float | None = None):
        self.retry_after = retry_after
        suffix = f" (retry after {retry_after:.1f}s)" if retry_after is not None else ""
        super().__init__(source, f"Rate limited{suffix}")


class UnsupportedPair(AdapterError):
    """Raised when an adapter cannot price the requested pair.

    This is a property of the pair, not a source failure: the source stays
    available for other pairs.

    :ivar pair: The unsupported pair.
    :ivar reason: Why the pair cannot be priced, if known.
    """

    kind = "unsupported"

    def __init__(self, source: str, pair: TokenPair, reason: str | None = None):
        self.pair = pair
        self.reason = reason
        suffix = f": {reason}" if reason else ""
        super().__init__(source, f"Unsupported pair {pair}{suffix}")


class TransportError(AdapterError):
    """Raised on network failures and non-2xx responses.

    :ivar status_code: HTTP status code, if a response was received.
    """

    kind = "transport"

    def __init__(self, source: str, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(source, message)


class MalformedResponse(AdapterError):
    """Raised when a provider response cannot be interpreted."""

    kind = "malformed"


class RateLimiter:
    """Token bucket limiting the request rate of one adapter.

    :ivar rate: Sustained requests per second.
    :ivar burst: Requests that may be issued back to back.
    """

    def __init__(self, source: str, rate: float, burst: int = 1) -> None:
        """Initialize the limiter.

        :param source: Adapter name, used in raised errors.
        :param rate: Requests per second (must be positive).
        :param burst: Bucket capacity (must be at least 1).
        :raises ValueError: If rate or burst are invalid.
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.source = source
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._updated: float | None = None
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        if self._updated is not None:
            self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self, deadline: float | None = None, tokens: int = 1) -> None:
        """Take tokens for the requests about to be issued, waiting if necessary.

        :param deadline: Absolute event loop time the caller must answer by.
        :param tokens: Number of requests the caller will make.
        :raises ValueError: If more tokens are requested than the bucket holds.
        :raises RateLimited: If the tokens do not become available before the deadline.
        """
        if not 1 <= tokens <= self.burst:
            raise ValueError(f"tokens must be within [1, {self.burst}]")
        loop = asyncio.get_running_loop()
        async with self._lock:
            self._refill(loop.time())
            if self._tokens < tokens:
                wait = (tokens - self._tokens) / self.rate
                if deadline is not None and loop.time() + wait > deadline:
                    raise RateLimited(self.source, retry_after=wait)
                await asyncio.sleep(wait)
                self._refill(loop.time())
            self._tokens -= tokens


class SourceAdapter(ABC):
    """Abstract base class for price sources.

    Subclasses must define:
        - name: Unique identifier of the source (e.g., "defillama")
        - source_class: "centralized", "dex_aggregator" or "onchain"
        - chains: Chain ids the source can price
        - _fetch_quote(): Async method producing a RawQuote for a pair

    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :cvar DEFAULT_RATE_LIMIT: Default requests per second.
    :cvar DEFAULT_BURST: Default token bucket capacity.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""
    source_class: ClassVar[str] = "centralized"
    chains: ClassVar[frozenset[int]] = frozenset()
    requires_api_key: ClassVar[bool] = False
    supports_cross_chain: ClassVar[bool] = False

    DEFAULT_TIMEOUT = 10.0
    DEFAULT_RATE_LIMIT = 5.0
    DEFAULT_BURST = 5

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        rate_limit: float | None = None,
    ) -> None:
        """Initialize the adapter.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Request timeout in seconds (default: DEFAULT_TIMEOUT).
        :param rate_limit: Requests per second (default: DEFAULT_RATE_LIMIT).
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.rate_limiter = RateLimiter(
            self.name,
            rate_limit or self.DEFAULT_RATE_LIMIT,
            burst=self.DEFAULT_BURST,
        )

    @property
    def has_api_key(self) -> bool:
        """Check if this adapter has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is stored on SourceAdapter itself so every subclass reuses
        the same connection pool.

        :returns: Shared httpx.AsyncClient instance.
        """
        client = SourceAdapter._shared_client
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
            SourceAdapter._shared_client = client
        return client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient | None) -> None:
        """Replace the shared HTTP client (e.g., with a mocked transport)."""
        SourceAdapter._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = SourceAdapter._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        SourceAdapter._shared_client = None

    def supports_pair(self, pair: TokenPair) -> bool:
        """Check if this adapter can price the given pair.

        Both tokens must live on one of :attr:`chains`. Cross-chain pairs are
        only accepted by adapters that price each token on its own
        (:attr:`supports_cross_chain`).

        :param pair: Token pair.
        :returns: True if pair is supported.
        """
        if pair.is_cross_chain and not self.supports_cross_chain:
            return False
        return (
            pair.base.chain_id in self.chains
            and pair.quote.chain_id in self.chains
            and (self.has_api_key or not self.requires_api_key)
        )

    def requests_for(self, pair: TokenPair) -> int:
        """Number of HTTP requests one fetch of the pair issues (default: 1)."""
        return 1

    async def fetch(self, pair: TokenPair, deadline: float) -> RawQuote:
        """Fetch a raw quote for a pair before the deadline.

        :param pair: Token pair to quote.
        :param deadline: Absolute event loop time (``loop.time()``) to answer by.
        :returns: Raw provider quote.
        :raises AdapterTimeout: If the deadline passes first.
        :raises RateLimited: If the provider or local limiter refuses the request.
        :raises UnsupportedPair: If the adapter cannot price the pair.
        :raises TransportError: On network or HTTP failures.
        :raises MalformedResponse: If the response cannot be interpreted.
        """
        if not self.supports_pair(pair):
            raise UnsupportedPair(self.name, pair)

        loop = asyncio.get_running_loop()
        if deadline - loop.time() <= 0:
            raise AdapterTimeout(self.name, f"Deadline already passed for {pair}")

        await self.rate_limiter.acquire(deadline, tokens=self.requests_for(pair))

        requested_at = time.time()
        try:
            return await asyncio.wait_for(
                self._fetch_quote(pair, requested_at),
                timeout=max(0.0, deadline - loop.time()),
            )
        except asyncio.TimeoutError as e:
            raise AdapterTimeout(self.name, f"Timeout fetching {pair}") from e

    @abstractmethod
    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        """Produce a raw quote for a supported pair.

        :param pair: Token pair to quote.
        :param requested_at: Unix timestamp the request was issued at.
        :returns: Raw provider quote.
        :raises AdapterError: On any failure.
        """

    def _raw_quote(
        self,
        pair: TokenPair,
        convention: QuoteConvention,
        values: dict[str, Decimal | int],
        requested_at: float,
        *,
        confidence: Decimal | None = None,
        payload: Any = None,
        base_key: str | None = None,
        quote_key: str | None = None,
    ) -> RawQuote:
        """Build a RawQuote stamped with the retrieval time."""
        return RawQuote(
            base_key=base_key or pair.base.key,
            quote_key=quote_key or pair.quote.key,
            convention=convention,
            values=values,
            requested_at=requested_at,
            retrieved_at=time.time(),
            confidence=confidence,
            payload=payload,
        )

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON response keeping numbers as Decimal.

        :raises MalformedResponse: If the body is not valid JSON.
        """
        try:
            return response.json(parse_float=Decimal)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponse(self.name, f"Invalid JSON: {e}") from e

    def _check_response(self, method: str, url: str, response: httpx.Response) -> httpx.Response:
        if response.status_code == 429:
            retry_after: float | None = None
            header = response.headers.get("retry-after")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            raise RateLimited(self.name, retry_after=retry_after)
        if not response.is_success:
            logger.debug(
                "HTTP %s %s failed with status %s: %s",
                method,
                url,
                response.status_code,
                response.text[:200],
            )
            raise TransportError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises RateLimited: On HTTP 429.
        :raises TransportError: On other non-2xx responses or network errors.
        :raises AdapterTimeout: On request timeout.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AdapterTimeout(self.name, f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(self.name, f"Request failed: {e}") from e
        return self._check_response("GET", url, response)

    async def _post(
        self,
        url: str,
        *,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP POST request using the shared client.

        :param url: Request URL.
        :param json: Optional JSON body.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises RateLimited: On HTTP 429.
        :raises TransportError: On other non-2xx responses or network errors.
        :raises AdapterTimeout: On request timeout.
        """
        client = self.get_shared_client()
        try:
            response = await client.post(
                url,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AdapterTimeout(self.name, f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(self.name, f"Request failed: {e}") from e
        return self._check_response("POST", url, response)


# Registry of available adapters (populated by subclass imports)
ADAPTER_REGISTRY: dict[str, type[SourceAdapter]] = {}


def register_adapter(cls: type[SourceAdapter]) -> type[SourceAdapter]:
    """Decorator to register an adapter class in the global registry.

    :param cls: Adapter class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If adapter has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Adapter {cls.__name__} must define a 'name' class variable")
    ADAPTER_REGISTRY[cls.name] = cls
    return cls


def get_adapter(name: str, api_key: str | None = None, **kwargs: Any) -> SourceAdapter:
    """Get an adapter instance by name.

    :param name: Adapter name (e.g., "defillama", "zero_x").
    :param api_key: Optional API key.
    :param kwargs: Extra constructor arguments (timeout, rate_limit, ...).
    :returns: Adapter instance.
    :raises ValueError: If adapter name is unknown.
    """
    if name not in ADAPTER_REGISTRY:
        available = ", ".join(sorted(ADAPTER_REGISTRY.keys()))
        raise ValueError(f"Unknown adapter '{name}'. Available: {available}")
    return ADAPTER_REGISTRY[name](api_key=api_key, **kwargs)


def get_available_adapters() -> list[str]:
    """Get list of available adapter names.

    :returns: Sorted list of registered adapter names.
    """
    return sorted(ADAPTER_REGISTRY.keys())
