"""SQLAlchemy models for persistent storage.

This module defines the database schema for indexed Transfer events and
per-contract sync checkpoints.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransferModel(Base):
    """Indexed ERC20 Transfer events for the watched contract."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)

    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # uint256 as a decimal string (up to 78 digits).
    amount: Mapped[str] = mapped_column(String(78), nullable=False)

    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_transfers_tx_log"),
        Index("idx_transfers_from", "from_address"),
        Index("idx_transfers_to", "to_address"),
        Index("idx_transfers_block", "block_number"),
    )


class SyncProgressModel(Base):
    """Last fully persisted block per watched contract."""

    __tablename__ = "sync_progress"

    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
