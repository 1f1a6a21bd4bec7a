"""Live log subscriptions delivered through a bounded queue.

A subscription runs a producer task that pushes batches of `RawLog` into an
`asyncio.Queue`. The consumer iterates the subscription; when the producer
dies the consumer receives exactly one `FatalSubscriptionError` and the
iteration then ends.

Two producers are provided:
- `WebSocketLogSubscription` uses `eth_subscribe("logs", ...)`.
- `PollingLogSubscription` polls the head and queries new block ranges.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import websockets
from websockets.asyncio.client import ClientConnection

from transfer_sync.chain.models import RawLog
from transfer_sync.exceptions import FatalSubscriptionError, RangeTooLargeError

if TYPE_CHECKING:
    from transfer_sync.chain.client import ChainDataSource

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0  # seconds

_CLOSED = object()


@dataclass
class SubscriptionStats:
    batches_delivered: int = 0
    logs_received: int = 0
    last_message_time: float | None = None
    last_error: str | None = None


class LogSubscription:
    """Base class for live log producers.

    Use as an async context manager and iterate it:

        async with client.subscribe(token, TRANSFER_TOPIC, from_block=n) as sub:
            async for batch in sub:
                ...
    """

    def __init__(self, *, queue_size: int = 100) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task[None] | None = None
        self._finished = False
        self._stats = SubscriptionStats()

    @property
    def stats(self) -> SubscriptionStats:
        return self._stats

    async def start(self) -> None:
        """Open the channel and start the producer task.

        Raises:
            FatalSubscriptionError: If the channel cannot be opened.
        """
        if self._task is not None:
            raise RuntimeError("Subscription already started")
        await self._open()
        self._task = asyncio.create_task(self._run(), name=type(self).__name__)

    async def close(self) -> None:
        """Stop the producer and release the channel. Safe to call twice."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._teardown()
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> LogSubscription:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def __aiter__(self) -> LogSubscription:
        return self

    async def __anext__(self) -> list[RawLog]:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, FatalSubscriptionError):
            self._finished = True
            raise item
        return item

    async def _emit(self, batch: list[RawLog]) -> None:
        # Blocks when the queue is full; the producer is paused until drained.
        await self._queue.put(list(batch))
        self._stats.batches_delivered += 1
        self._stats.logs_received += len(batch)

    async def _run(self) -> None:
        try:
            await self._produce()
            error = FatalSubscriptionError("Subscription producer stopped")
        except asyncio.CancelledError:
            raise
        except FatalSubscriptionError as e:
            error = e
        except Exception as e:
            error = FatalSubscriptionError(f"Subscription failed: {e}")
            error.__cause__ = e
        self._stats.last_error = str(error)
        logger.error("Log subscription failed: %s", error)
        await self._queue.put(error)

    async def _open(self) -> None:
        """Hook for producers that need a connection before starting."""

    async def _teardown(self) -> None:
        """Hook for releasing producer resources."""

    async def _produce(self) -> None:
        raise NotImplementedError


class WebSocketLogSubscription(LogSubscription):
    """`eth_subscribe` logs producer.

    Notifications are grouped per block: a buffered group is delivered when a
    log from a different block arrives, or after `flush_interval` seconds
    without any message.
    """

    def __init__(
        self,
        url: str,
        *,
        address: str,
        topic: str,
        queue_size: int = 100,
        flush_interval: float = 1.0,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT,
    ) -> None:
        super().__init__(queue_size=queue_size)
        self._url = url
        self._address = address.lower()
        self._topic = topic
        self._flush_interval = flush_interval
        self._ping_interval = ping_interval
        self._subscribe_timeout = subscribe_timeout

        self._ws: ClientConnection | None = None
        self._subscription_id: str | None = None

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    async def _open(self) -> None:
        try:
            self._ws = await websockets.connect(
                self._url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
            request = {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "eth_subscribe",
                "params": ["logs", {"address": self._address, "topics": [self._topic]}],
            }
            await self._ws.send(json.dumps(request))
            response = await self._await_response(self._ws, request_id=1)
        except Exception as e:
            await self._teardown()
            raise FatalSubscriptionError(f"Failed to subscribe via {self._url}: {e}") from e

        if "error" in response or not response.get("result"):
            await self._teardown()
            raise FatalSubscriptionError(f"eth_subscribe rejected: {response.get('error')}")

        self._subscription_id = str(response["result"])
        logger.info("Subscribed to logs address=%s subscription=%s", self._address, self._subscription_id)

    async def _await_response(self, ws: ClientConnection, *, request_id: int) -> dict[str, Any]:
        async with asyncio.timeout(self._subscribe_timeout):
            while True:
                data = json.loads(await ws.recv())
                if isinstance(data, dict) and data.get("id") == request_id:
                    return data

    def _parse_notification(self, message: str | bytes) -> RawLog | None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON message on log subscription")
            return None

        if not isinstance(data, dict) or data.get("method") != "eth_subscription":
            logger.debug("Ignoring non-notification message: %r", data)
            return None
        params = data.get("params") or {}
        if params.get("subscription") != self._subscription_id:
            return None

        try:
            log = RawLog.from_rpc(params["result"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse log notification: %s", e)
            return None

        if log.removed:
            logger.warning("Ignoring removed log tx=%s index=%d block=%d", log.tx_hash, log.log_index, log.block_number)
            return None
        return log

    async def _produce(self) -> None:
        ws = self._ws
        if ws is None:
            raise FatalSubscriptionError("WebSocket is not connected")

        buffer: list[RawLog] = []
        try:
            while True:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=self._flush_interval)
                except TimeoutError:
                    if buffer:
                        await self._emit(buffer)
                        buffer = []
                    continue

                self._stats.last_message_time = time.time()
                log = self._parse_notification(message)
                if log is None:
                    continue
                if buffer and buffer[-1].block_number != log.block_number:
                    await self._emit(buffer)
                    buffer = []
                buffer.append(log)
        except websockets.ConnectionClosed as e:
            logger.warning("Log subscription connection closed: %s", e)
            raise FatalSubscriptionError(f"WebSocket closed: {e}") from e

    async def _teardown(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        with contextlib.suppress(Exception):
            await ws.close()


class PollingLogSubscription(LogSubscription):
    """Head-polling producer for endpoints without WebSocket support.

    Each polled range that yields logs is delivered as one batch. A range
    rejected as too large is halved and retried.
    """

    def __init__(
        self,
        source: ChainDataSource,
        *,
        address: str,
        topic: str,
        from_block: int,
        queue_size: int = 100,
        poll_interval: float = 4.0,
        max_range: int = 10,
    ) -> None:
        super().__init__(queue_size=queue_size)
        self._source = source
        self._address = address
        self._topic = topic
        self._cursor = from_block
        self._poll_interval = poll_interval
        self._max_range = max(1, max_range)

    @property
    def cursor(self) -> int:
        """Next block the producer will query."""
        return self._cursor

    async def _produce(self) -> None:
        window = self._max_range
        while True:
            head = await self._source.current_height()
            while self._cursor <= head:
                to_block = min(head, self._cursor + window - 1)
                try:
                    logs = await self._source.get_logs(self._address, self._topic, self._cursor, to_block)
                except RangeTooLargeError:
                    if window == 1:
                        raise
                    window = max(1, window // 2)
                    continue
                if logs:
                    await self._emit(logs)
                self._cursor = to_block + 1
                window = self._max_range
            await asyncio.sleep(self._poll_interval)
