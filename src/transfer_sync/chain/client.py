"""EVM JSON-RPC client with rate limiting, retry, failover and caching.

This module provides the chain data source used by the sync engine:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff
- Failover to a secondary RPC URL
- Redis caching of immutable block timestamps
- Live log subscriptions (WebSocket or polling)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from transfer_sync.chain.models import RawLog
from transfer_sync.chain.subscription import (
    LogSubscription,
    PollingLogSubscription,
    WebSocketLogSubscription,
)
from transfer_sync.exceptions import ConnectivityError, RangeTooLargeError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 3600  # blocks are immutable
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_PRIMARY_RECOVERY_INTERVAL = 60.0

# Provider error fragments meaning "shrink the block window". Only checked for eth_getLogs.
RANGE_TOO_LARGE_MARKERS = (
    "block range",
    "query returned more than",
    "response size exceeded",
    "log response size",
    "too many results",
    "exceeds max results",
)

# Throttling responses share error codes and wording with range limits.
RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "exceeded its request",
)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
    OSError,
)


def _is_range_too_large(error: BaseException) -> bool:
    message = str(error).lower()
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return False
    return any(marker in message for marker in RANGE_TOO_LARGE_MARKERS)


class ChainDataSource(Protocol):
    """What the sync engine needs from a blockchain endpoint."""

    async def current_height(self) -> int: ...

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> list[RawLog]: ...

    async def get_block_timestamp(self, block_number: int) -> int: ...

    def subscribe(self, address: str, topic: str, *, from_block: int, queue_size: int) -> LogSubscription: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
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
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Blockchain client implementing the sync engine's data source.

    Example:
        ```python
        client = ChainClient(
            "https://rpc.sepolia.org",
            fallback_rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
            ws_url="wss://ethereum-sepolia-rpc.publicnode.com",
        )
        head = await client.current_height()
        logs = await client.get_logs(token, TRANSFER_TOPIC, head - 9, head)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        ws_url: str | None = None,
        redis: Redis | None = None,
        confirmations: int = 0,
        poa: bool = False,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        poll_interval_seconds: float = 4.0,
        poll_window: int = 10,
        ws_flush_interval_seconds: float = 1.0,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary JSON-RPC HTTP endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            ws_url: Optional WebSocket URL for eth_subscribe. Polling is used without it.
            redis: Optional Redis client for caching block timestamps.
            confirmations: Blocks behind latest treated as the confirmed head.
            poa: Inject the proof-of-authority extraData middleware.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint on transient failure.
            retry_delay_seconds: Initial delay between retries.
            poll_interval_seconds: Head polling interval for polling subscriptions.
            poll_window: Maximum blocks per log query for polling subscriptions.
            ws_flush_interval_seconds: Idle flush interval for WebSocket subscriptions.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._ws_url = ws_url
        self._redis = redis
        self._confirmations = confirmations
        self._poa = poa
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._poll_interval = poll_interval_seconds
        self._poll_window = poll_window
        self._ws_flush_interval = ws_flush_interval_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = DEFAULT_PRIMARY_RECOVERY_INTERVAL

        self._cache_prefix = "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        if self._poa:
            try:
                client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            except Exception as e:
                logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy or self._w3_fallback is None:
            return True
        # Periodically retry primary
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
        range_sensitive: bool = False,
    ) -> tuple[bool, Any]:
        """Run one RPC method against one endpoint with retries.

        Returns `(True, result)` on success and `(False, last_error)` once
        attempts are exhausted.
        """
        delay = self._retry_delay
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args)
            except TRANSIENT_ERRORS as e:
                if range_sensitive and _is_range_too_large(e):
                    raise RangeTooLargeError(f"{func_name} rejected by {label} RPC: {e}") from e
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any, range_sensitive: bool = False) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RangeTooLargeError: If `range_sensitive` and the endpoint rejects the request size.
            ConnectivityError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: BaseException | None = None

        if self._should_try_primary():
            ok, result = await self._call_endpoint(
                self._w3, "Primary", func_name, *args, range_sensitive=range_sensitive
            )
            if ok:
                self._primary_healthy = True
                return result
            last_error = result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result = await self._call_endpoint(
                self._w3_fallback, "Fallback", func_name, *args, range_sensitive=range_sensitive
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = result

        raise ConnectivityError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def current_height(self) -> int:
        """Get the latest confirmed block number."""
        block = await self._execute_with_retry("get_block", "latest")
        return max(0, int(block["number"]) - self._confirmations)

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> list[RawLog]:
        """Fetch logs for an inclusive block range via `eth_getLogs`."""
        if from_block > to_block:
            raise ValueError(f"Invalid range {from_block}-{to_block}")
        logs = await self._execute_with_retry(
            "get_logs",
            {
                "address": AsyncWeb3.to_checksum_address(address),
                "topics": [topic],
                "fromBlock": from_block,
                "toBlock": to_block,
            },
            range_sensitive=True,
        )
        return [RawLog.from_rpc(log) for log in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get a block's timestamp in seconds since epoch."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        block = await self._execute_with_retry("get_block", block_number)
        timestamp = int(block["timestamp"])

        await self._set_cached(cache_key, str(timestamp))
        return timestamp

    def subscribe(
        self,
        address: str,
        topic: str,
        *,
        from_block: int,
        queue_size: int = 100,
    ) -> LogSubscription:
        """Create a live log subscription.

        Uses `eth_subscribe` when a WebSocket URL is configured; otherwise
        polls the head and queries new ranges starting at `from_block`.
        The returned subscription must be entered (`async with`) to start.
        """
        if self._ws_url:
            return WebSocketLogSubscription(
                self._ws_url,
                address=address,
                topic=topic,
                queue_size=queue_size,
                flush_interval=self._ws_flush_interval,
            )
        return PollingLogSubscription(
            self,
            address=address,
            topic=topic,
            from_block=from_block,
            queue_size=queue_size,
            poll_interval=self._poll_interval,
            max_range=self._poll_window,
        )

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC."""
        try:
            await self.current_height()
            return True
        except ConnectivityError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
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
