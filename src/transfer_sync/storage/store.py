"""Atomic batch persistence for the sync engine."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from transfer_sync.chain.models import TransferEvent
from transfer_sync.exceptions import PersistenceError
from transfer_sync.storage.database import DatabaseManager
from transfer_sync.storage.repos import SyncProgressRepository, TransferRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistAck:
    """Outcome of a committed batch."""

    received: int
    inserted: int
    duplicates: int
    checkpoint_block: int


class TransferStore:
    """Writes event batches and their checkpoint in a single transaction.

    Either every event of the batch plus the checkpoint update is committed,
    or nothing is. Re-persisting an already committed batch is a no-op apart
    from the duplicate count.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def persist_batch(
        self,
        events: Sequence[TransferEvent],
        checkpoint_block: int,
        contract_address: str,
    ) -> PersistAck:
        """Persist a batch of events and advance the checkpoint.

        Raises:
            PersistenceError: If any step fails; the transaction is rolled back.
        """
        inserted = 0
        try:
            async with self._db.transaction() as session:
                transfers = TransferRepository(session)
                for event in events:
                    if await transfers.insert_ignore(event):
                        inserted += 1
                await SyncProgressRepository(session).advance(contract_address, checkpoint_block)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(
                f"Failed to persist batch of {len(events)} events at checkpoint {checkpoint_block}: {e}"
            ) from e

        return PersistAck(
            received=len(events),
            inserted=inserted,
            duplicates=len(events) - inserted,
            checkpoint_block=checkpoint_block,
        )

    async def read_checkpoint(self, contract_address: str) -> int | None:
        """Return the last synced block for a contract, or None if never synced.

        Raises:
            PersistenceError: If the read fails.
        """
        try:
            async with self._db.get_async_session() as session:
                progress = await SyncProgressRepository(session).get(contract_address)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Failed to read checkpoint for {contract_address}: {e}") from e
        return progress.last_synced_block if progress else None
