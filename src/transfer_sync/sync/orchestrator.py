"""Checkpointed synchronization state machine.

The orchestrator drives a single watched contract through:

    INIT → CATCHUP → REALTIME

INIT reads the stored checkpoint and the chain head. CATCHUP walks the
historical range in windows, committing each window atomically together with
its checkpoint. REALTIME opens a live subscription, closes the gap left since
the last head read, then commits delivered batches one at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TypeVar

from transfer_sync.chain.client import ChainDataSource
from transfer_sync.chain.models import TRANSFER_TOPIC, LogDecodingError, RawLog, TransferEvent
from transfer_sync.chain.subscription import LogSubscription
from transfer_sync.chain.timestamps import BlockTimestampResolver
from transfer_sync.exceptions import (
    ConnectivityError,
    FatalSubscriptionError,
    PersistenceError,
    RangeTooLargeError,
    SyncError,
)
from transfer_sync.storage.store import PersistAck, TransferStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_BACKOFF_EXPONENT = 32


class SyncState(str, Enum):
    """Orchestrator lifecycle states."""

    STOPPED = "stopped"
    INIT = "init"
    CATCHUP = "catchup"
    REALTIME = "realtime"
    FAILED = "failed"


@dataclass
class SyncStats:
    """Statistics for the orchestrator."""

    started_at: datetime | None = None
    batches_committed: int = 0
    events_inserted: int = 0
    duplicates: int = 0
    malformed_logs: int = 0
    retries: int = 0
    resubscriptions: int = 0
    last_checkpoint: int | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff for failed batches.

    `max_attempts` of 0 retries indefinitely.
    """

    initial_delay: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        exponent = min(max(attempt - 1, 0), _MAX_BACKOFF_EXPONENT)
        return min(self.max_delay, self.initial_delay * (2**exponent))

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts


class _StopRequested(Exception):
    """Raised internally when stop() interrupts a backoff wait."""


class SyncOrchestrator:
    """Synchronizes Transfer events of one contract into the store.

    Example:
        ```python
        orchestrator = SyncOrchestrator(
            client,
            TransferStore(db),
            BlockTimestampResolver(client),
            contract_address=token,
            start_block=5_000_000,
        )
        await orchestrator.run()  # returns after stop(), raises SyncError on fatal failure
        ```
    """

    def __init__(
        self,
        source: ChainDataSource,
        store: TransferStore,
        resolver: BlockTimestampResolver,
        *,
        contract_address: str,
        start_block: int = 0,
        batch_window: int = 10,
        retry: RetryPolicy | None = None,
        resubscribe: bool = False,
        queue_size: int = 100,
        topic: str = TRANSFER_TOPIC,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            source: Chain data source (RPC client).
            store: Atomic batch store.
            resolver: Block timestamp resolver.
            contract_address: Watched token contract.
            start_block: First block to index when no checkpoint exists.
            batch_window: Blocks per historical log query.
            retry: Backoff policy for transient failures.
            resubscribe: Re-enter INIT after a fatal subscription error
                instead of failing.
            queue_size: Bound of the live subscription queue.
            topic: Event topic0 to watch.
        """
        if batch_window < 1:
            raise ValueError("batch_window must be >= 1")
        self._source = source
        self._store = store
        self._resolver = resolver
        self._contract = contract_address.lower()
        self._start_block = start_block
        self._batch_window = batch_window
        self._window = batch_window
        self._retry = retry or RetryPolicy()
        self._resubscribe = resubscribe
        self._queue_size = queue_size
        self._topic = topic

        self._state = SyncState.STOPPED
        self._stats = SyncStats()
        self._pointer = start_block
        self._head = -1

        self._stop_event = asyncio.Event()
        self._subscription: LogSubscription | None = None

    @property
    def state(self) -> SyncState:
        """Current orchestrator state."""
        return self._state

    @property
    def stats(self) -> SyncStats:
        """Current orchestrator statistics."""
        return self._stats

    @property
    def pointer(self) -> int:
        """Next block to be synchronized."""
        return self._pointer

    @property
    def window(self) -> int:
        """Current historical query window (shrinks on oversized ranges)."""
        return self._window

    @property
    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def _set_state(self, new_state: SyncState) -> None:
        if self._state != new_state:
            logger.info("Sync state: %s -> %s", self._state.value, new_state.value)
            self._state = new_state

    async def run(self) -> None:
        """Synchronize until stop() is called.

        Raises:
            SyncError: On exhausted retries, an unshrinkable range, or a fatal
                subscription error when resubscription is disabled.
        """
        if self._state not in (SyncState.STOPPED, SyncState.FAILED):
            raise RuntimeError(f"Cannot run orchestrator in state {self._state}")

        self._stats.started_at = datetime.now(UTC)
        failures = 0
        try:
            while not self._stopping:
                await self._initialize()
                if self._stopping:
                    break
                self._set_state(SyncState.CATCHUP)
                await self._catch_up()
                if self._stopping:
                    break

                committed_before = self._stats.batches_committed
                try:
                    await self._follow()
                except FatalSubscriptionError as e:
                    self._stats.last_error = str(e)
                    if not self._resubscribe:
                        raise
                    if self._stats.batches_committed > committed_before:
                        failures = 0
                    failures += 1
                    if self._retry.exhausted(failures):
                        raise
                    self._stats.resubscriptions += 1
                    delay = self._retry.delay_for(failures)
                    logger.warning("subscription=failed resubscribe_in=%.1fs error=%s", delay, e)
                    await self._sleep(delay)
        except _StopRequested:
            pass
        except SyncError as e:
            self._stats.last_error = str(e)
            self._set_state(SyncState.FAILED)
            logger.error("Sync failed: %s", e)
            raise
        finally:
            self._subscription = None

        self._set_state(SyncState.STOPPED)

    async def stop(self) -> None:
        """Request a clean stop; the current batch is allowed to finish."""
        self._stop_event.set()
        subscription = self._subscription
        if subscription is not None:
            await subscription.close()

    async def _sleep(self, delay: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        if self._stopping:
            raise _StopRequested

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation, retrying transient failures per the retry policy."""
        attempt = 0
        while True:
            try:
                return await operation()
            except (ConnectivityError, PersistenceError) as e:
                attempt += 1
                self._stats.last_error = str(e)
                if self._retry.exhausted(attempt):
                    logger.error("op=%s attempts=%d giving_up error=%s", description, attempt, e)
                    raise
                self._stats.retries += 1
                delay = self._retry.delay_for(attempt)
                logger.warning("op=%s attempt=%d retry_in=%.1fs error=%s", description, attempt, delay, e)
                await self._sleep(delay)

    async def _initialize(self) -> None:
        self._set_state(SyncState.INIT)
        checkpoint = await self._with_retry(
            "read_checkpoint",
            lambda: self._store.read_checkpoint(self._contract),
        )
        self._pointer = self._start_block if checkpoint is None else checkpoint + 1
        self._stats.last_checkpoint = checkpoint
        self._head = await self._with_retry("current_height", self._source.current_height)
        logger.info(
            "init contract=%s checkpoint=%s pointer=%d head=%d",
            self._contract,
            checkpoint,
            self._pointer,
            self._head,
        )

    async def _catch_up(self) -> None:
        """Sync `[pointer, head]`, re-reading the head until it stops moving."""
        while not self._stopping:
            while self._pointer <= self._head:
                if self._stopping:
                    return
                await self._sync_next_range()

            head = await self._with_retry("current_height", self._source.current_height)
            if head < self._pointer:
                self._head = max(self._head, head)
                return
            self._head = head

    async def _sync_next_range(self, upper: int | None = None) -> None:
        from_block = self._pointer
        to_block = min(from_block + self._window - 1, self._head if upper is None else upper)
        try:
            ack = await self._with_retry(
                f"range:{from_block}-{to_block}",
                lambda: self._sync_range(from_block, to_block),
            )
        except RangeTooLargeError:
            if to_block == from_block:
                raise
            self._window = max(1, (to_block - from_block + 1) // 2)
            logger.warning("range from=%d to=%d too_large new_window=%d", from_block, to_block, self._window)
            return

        self._pointer = to_block + 1
        if self._window < self._batch_window:
            self._window = min(self._batch_window, self._window * 2)
        logger.info(
            "range from=%d to=%d events=%d inserted=%d duplicates=%d checkpoint=%d",
            from_block,
            to_block,
            ack.received,
            ack.inserted,
            ack.duplicates,
            ack.checkpoint_block,
        )

    async def _sync_range(self, from_block: int, to_block: int) -> PersistAck:
        logs = await self._source.get_logs(self._contract, self._topic, from_block, to_block)
        return await self._commit_batch(logs, to_block)

    async def _commit_batch(self, logs: Sequence[RawLog], checkpoint_block: int) -> PersistAck:
        """Resolve timestamps, decode, and persist one batch atomically."""
        logs = [log for log in logs if not log.removed]
        timestamps = await self._resolver.resolve(logs)

        events: list[TransferEvent] = []
        for log in logs:
            try:
                events.append(TransferEvent.from_raw_log(log, block_timestamp=timestamps[log.block_number]))
            except LogDecodingError as e:
                self._stats.malformed_logs += 1
                logger.warning("Skipping malformed log tx=%s index=%d: %s", log.tx_hash, log.log_index, e)

        ack = await self._store.persist_batch(events, checkpoint_block, self._contract)

        self._stats.batches_committed += 1
        self._stats.events_inserted += ack.inserted
        self._stats.duplicates += ack.duplicates
        if self._stats.last_checkpoint is None or checkpoint_block > self._stats.last_checkpoint:
            self._stats.last_checkpoint = checkpoint_block
        return ack

    async def _follow(self) -> None:
        """Consume the live subscription until stopped.

        Raises:
            FatalSubscriptionError: If the channel fails or ends on its own.
        """
        self._set_state(SyncState.REALTIME)
        subscription = self._source.subscribe(
            self._contract,
            self._topic,
            from_block=self._pointer,
            queue_size=self._queue_size,
        )
        self._subscription = subscription
        try:
            async with subscription:
                # Blocks produced between the last head read and the subscription start.
                await self._catch_up()
                if self._stopping:
                    return

                async for batch in subscription:
                    if self._stopping:
                        break
                    await self._process_live_batch(batch)
        finally:
            self._subscription = None

        if not self._stopping:
            raise FatalSubscriptionError("Log subscription ended unexpectedly")

    async def _process_live_batch(self, batch: Sequence[RawLog]) -> None:
        if not batch:
            return
        min_block = min(log.block_number for log in batch)
        max_block = max(log.block_number for log in batch)

        # Pushed blocks can run ahead of the confirmed head; backfill the blocks
        # in between before this batch moves the checkpoint past them.
        if min_block > self._pointer:
            logger.info("live gap from=%d to=%d", self._pointer, min_block - 1)
            while self._pointer < min_block:
                if self._stopping:
                    return
                await self._sync_next_range(upper=min_block - 1)

        ack = await self._with_retry(
            f"live:{max_block}",
            lambda: self._commit_batch(batch, max_block),
        )
        self._pointer = max(self._pointer, max_block + 1)
        logger.info(
            "live block=%d events=%d inserted=%d duplicates=%d pointer=%d",
            max_block,
            ack.received,
            ack.inserted,
            ack.duplicates,
            self._pointer,
        )
