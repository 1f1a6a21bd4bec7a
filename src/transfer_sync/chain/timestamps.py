"""Block timestamp resolution with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Protocol

from transfer_sync.chain.models import RawLog
from transfer_sync.exceptions import ConnectivityError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10
DEFAULT_CHUNK_DELAY_SECONDS = 0.1


class TimestampSource(Protocol):
    async def get_block_timestamp(self, block_number: int) -> int: ...


class BlockTimestampResolver:
    """Resolve the timestamps of the blocks a set of logs belongs to.

    Distinct block numbers are fetched in ascending chunks of `chunk_size`
    concurrent lookups, pausing `chunk_delay` seconds between chunks (never
    after the last one). Any failed lookup fails the whole resolution, so a
    batch is never persisted with a partial timestamp map.
    """

    def __init__(
        self,
        source: TimestampSource,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_delay: float = DEFAULT_CHUNK_DELAY_SECONDS,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._source = source
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay

    async def resolve(self, logs: Iterable[RawLog]) -> dict[int, int]:
        """Map every distinct block number in `logs` to its timestamp.

        Raises:
            ConnectivityError: If any lookup fails.
        """
        blocks = sorted({log.block_number for log in logs})
        timestamps: dict[int, int] = {}

        for start in range(0, len(blocks), self._chunk_size):
            if start and self._chunk_delay > 0:
                await asyncio.sleep(self._chunk_delay)
            chunk = blocks[start : start + self._chunk_size]
            results = await asyncio.gather(
                *(self._source.get_block_timestamp(n) for n in chunk),
                return_exceptions=True,
            )
            for number, result in zip(chunk, results, strict=True):
                if isinstance(result, BaseException):
                    if isinstance(result, ConnectivityError):
                        raise result
                    raise ConnectivityError(f"Failed to get timestamp for block {number}: {result}") from result
                timestamps[number] = int(result)

        if blocks:
            logger.debug("Resolved %d block timestamps (%d..%d)", len(blocks), blocks[0], blocks[-1])
        return timestamps
