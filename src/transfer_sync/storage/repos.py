"""Repository pattern implementations for data access.

This module provides data access abstractions for indexed transfers and
sync checkpoints. Repositories operate on a caller-provided session and
never commit; transaction boundaries belong to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from transfer_sync.storage.models import SyncProgressModel, TransferModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from transfer_sync.chain.models import TransferEvent

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Pick the dialect-specific INSERT construct supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Unsupported database dialect: {dialect}")


@dataclass
class TransferDTO:
    """Data transfer object for indexed Transfer events."""

    tx_hash: str
    log_index: int
    from_address: str
    to_address: str
    amount: str
    block_number: int
    block_hash: str
    block_timestamp: int
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            from_address=model.from_address,
            to_address=model.to_address,
            amount=model.amount,
            block_number=model.block_number,
            block_hash=model.block_hash,
            block_timestamp=model.block_timestamp,
            created_at=model.created_at,
        )


@dataclass
class SyncProgressDTO:
    """Data transfer object for sync checkpoints."""

    contract_address: str
    last_synced_block: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SyncProgressModel) -> SyncProgressDTO:
        return cls(
            contract_address=model.contract_address,
            last_synced_block=model.last_synced_block,
            updated_at=model.updated_at,
        )


class TransferRepository:
    """Repository for indexed Transfer events."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_ignore(self, event: TransferEvent) -> bool:
        """Insert a transfer unless `(tx_hash, log_index)` already exists.

        Returns:
            True if a row was inserted, False if it was a duplicate.
        """
        stmt = _dialect_insert(self.session, TransferModel).values(
            tx_hash=event.tx_hash.lower(),
            log_index=event.log_index,
            from_address=event.from_address.lower(),
            to_address=event.to_address.lower(),
            amount=event.amount,
            block_number=event.block_number,
            block_hash=event.block_hash.lower(),
            block_timestamp=event.block_timestamp,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def list_for_address(self, address: str, *, limit: int, offset: int = 0) -> list[TransferDTO]:
        """List transfers where the address is sender or recipient.

        Args:
            address: Wallet address (any case).
            limit: Maximum number of results.
            offset: Number of rows to skip.

        Returns:
            List of TransferDTOs, newest first by (block_number, log_index).
        """
        address = address.lower()
        result = await self.session.execute(
            select(TransferModel)
            .where(or_(TransferModel.from_address == address, TransferModel.to_address == address))
            .order_by(TransferModel.block_number.desc(), TransferModel.log_index.desc())
            .limit(limit)
            .offset(offset)
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_address(self, address: str) -> int:
        """Count transfers where the address is sender or recipient."""
        address = address.lower()
        result = await self.session.execute(
            select(func.count())
            .select_from(TransferModel)
            .where(or_(TransferModel.from_address == address, TransferModel.to_address == address))
        )
        return int(result.scalar_one())


class SyncProgressRepository:
    """Repository for per-contract sync checkpoints."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract_address: str) -> SyncProgressDTO | None:
        result = await self.session.execute(
            select(SyncProgressModel).where(SyncProgressModel.contract_address == contract_address.lower())
        )
        model = result.scalar_one_or_none()
        return SyncProgressDTO.from_model(model) if model else None

    async def advance(self, contract_address: str, block_number: int) -> None:
        """Upsert the checkpoint, never lowering a stored value."""
        now = datetime.now(UTC)
        stmt = _dialect_insert(self.session, SyncProgressModel).values(
            contract_address=contract_address.lower(),
            last_synced_block=block_number,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract_address"],
            set_={
                "last_synced_block": stmt.excluded.last_synced_block,
                "updated_at": now,
            },
            where=SyncProgressModel.last_synced_block < stmt.excluded.last_synced_block,
        )
        await self.session.execute(stmt)

    async def list_all(self) -> list[SyncProgressDTO]:
        result = await self.session.execute(
            select(SyncProgressModel).order_by(SyncProgressModel.contract_address.asc())
        )
        return [SyncProgressDTO.from_model(m) for m in result.scalars().all()]
