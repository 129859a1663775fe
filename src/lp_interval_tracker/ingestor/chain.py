"""EVM JSON-RPC client used for entity discovery.

The client wraps ``AsyncWeb3`` with:
- Rate limiting to respect provider limits
- Retry with exponential backoff
- Failover to a secondary RPC URL
- Optional Redis caching of immutable call results
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
PRIMARY_RECOVERY_INTERVAL_SECONDS = 60.0

Web3Call = Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[Any]]

# Failures worth retrying on the same endpoint. OSError covers timeouts and
# refused connections.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (Web3Exception, aiohttp.ClientError, OSError)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every endpoint."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


class ChainClient:
    """JSON-RPC client with rate limiting, retry, failover and caching.

    Example:
        ```python
        client = ChainClient(
            "https://mainnet.base.org",
            fallback_rpc_url="https://base.publicnode.com",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        symbol_decimals = await client.call_function(token, ERC20_ABI, "decimals")
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint before giving up on it.
            retry_delay_seconds: Initial delay between retries.
        """
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0

        self._cache_prefix = "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _cache_key(self, *parts: str) -> str:
        return self._cache_prefix + ":".join(p.lower() for p in parts)

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if isinstance(value, bytes):
            return value.decode()
        return str(value) if value is not None else None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > PRIMARY_RECOVERY_INTERVAL_SECONDS:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(self, label: str, endpoint: str, w3: AsyncWeb3[AsyncHTTPProvider], call: Web3Call) -> Any:
        delay = self._retry_delay
        for attempt in range(1, self._max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                return await call(w3)
            except TRANSIENT_ERRORS as e:
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt,
                    self._max_retries,
                    e,
                )
                if attempt == self._max_retries:
                    raise
                await asyncio.sleep(delay)
                delay *= 2
        raise RPCError(f"RPC call {label} was not attempted on {endpoint}")

    async def _execute_with_retry(self, label: str, call: Web3Call) -> Any:
        """Run ``call`` against the primary endpoint, then the fallback.

        Raises:
            RPCError: If every attempt on every endpoint failed.
        """
        last_error: Exception | None = None

        if self._should_try_primary():
            try:
                result = await self._attempt(label, "Primary", self._w3, call)
            except TRANSIENT_ERRORS as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()
            else:
                self._primary_healthy = True
                return result

        if self._w3_fallback is not None:
            try:
                result = await self._attempt(label, "Fallback", self._w3_fallback, call)
            except TRANSIENT_ERRORS as e:
                last_error = e
            else:
                logger.info("Fallback RPC succeeded for %s", label)
                return result

        raise RPCError(f"RPC call {label} failed after all retries: {last_error}")

    async def call_function(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        *args: Any,
        block_identifier: int | str = "latest",
    ) -> Any:
        """Call a view function on a contract.

        Results are not cached here; see ``call_immutable``.
        """
        checksum = AsyncWeb3.to_checksum_address(address)

        async def _call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = w3.eth.contract(address=checksum, abi=abi)
            return await getattr(contract.functions, fn_name)(*args).call(block_identifier=block_identifier)

        return await self._execute_with_retry(f"{fn_name}@{address}", _call)

    async def call_immutable(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
    ) -> str:
        """Call a no-argument view function whose result never changes.

        The result is returned as a string and cached in Redis under the
        contract address and function name.
        """
        cache_key = self._cache_key("call", address, fn_name)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        value = await self.call_function(address, abi, fn_name)
        text = str(value)
        await self._set_cached(cache_key, text)
        return text

    async def get_block_number(self) -> int:
        async def _call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            return await w3.eth.block_number

        return int(await self._execute_with_retry("block_number", _call))

    async def health_check(self) -> bool:
        """Check if the client can reach an RPC endpoint."""
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
