"""Tests for storage repositories."""

from __future__ import annotations

import pytest

from transfer_sync.chain.models import TransferEvent
from transfer_sync.storage.database import DatabaseManager
from transfer_sync.storage.repos import SyncProgressRepository, TransferRepository

TOKEN = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ALICE = "0x1234567890abcdef1234567890abcdef12345678"
BOB = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
CAROL = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"

# ============================================================================
# Fixtures
# ============================================================================


def _event(block_number: int, log_index: int = 0, *, sender: str = ALICE, recipient: str = BOB) -> TransferEvent:
    return TransferEvent(
        tx_hash="0x" + format(block_number * 1000 + log_index, "064x"),
        log_index=log_index,
        from_address=sender,
        to_address=recipient,
        amount=str(10**24 + block_number),
        block_number=block_number,
        block_hash="0x" + format(block_number, "064x"),
        block_timestamp=1_700_000_000 + block_number,
    )


# ============================================================================
# TransferRepository Tests
# ============================================================================


class TestTransferRepository:
    """Tests for TransferRepository."""

    @pytest.mark.asyncio
    async def test_insert_ignore_reports_duplicates(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            assert await repo.insert_ignore(_event(100)) is True
            assert await repo.insert_ignore(_event(100)) is False
            assert await repo.insert_ignore(_event(100, 1)) is True

        async with db.get_async_session() as session:
            assert await TransferRepository(session).count_for_address(ALICE) == 2

    @pytest.mark.asyncio
    async def test_stored_row_keeps_large_amount(self, db: DatabaseManager) -> None:
        event = _event(100)
        async with db.get_async_session() as session:
            await TransferRepository(session).insert_ignore(event)

        async with db.get_async_session() as session:
            (stored,) = await TransferRepository(session).list_for_address(ALICE, limit=10)

        assert (stored.tx_hash, stored.log_index) == (event.tx_hash, event.log_index)
        assert stored.amount == event.amount
        assert stored.block_timestamp == event.block_timestamp
        assert stored.created_at is not None

    @pytest.mark.asyncio
    async def test_list_for_address_matches_either_side(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            await repo.insert_ignore(_event(100, 0, sender=ALICE, recipient=BOB))
            await repo.insert_ignore(_event(101, 0, sender=BOB, recipient=ALICE))
            await repo.insert_ignore(_event(101, 1, sender=BOB, recipient=CAROL))

        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            rows = await repo.list_for_address(ALICE.upper().replace("0X", "0x"), limit=10)
            total = await repo.count_for_address(ALICE)

        assert total == 2
        assert [(r.block_number, r.log_index) for r in rows] == [(101, 0), (100, 0)]

    @pytest.mark.asyncio
    async def test_list_orders_by_block_then_log_index_desc(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = TransferRepository(session)
            for block, index in [(5, 0), (7, 1), (7, 3), (6, 2)]:
                await repo.insert_ignore(_event(block, index))

        async with db.get_async_session() as session:
            rows = await TransferRepository(session).list_for_address(BOB, limit=2, offset=1)

        assert [(r.block_number, r.log_index) for r in rows] == [(7, 1), (6, 2)]


# ============================================================================
# SyncProgressRepository Tests
# ============================================================================


class TestSyncProgressRepository:
    """Tests for SyncProgressRepository."""

    @pytest.mark.asyncio
    async def test_get_missing(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            assert await SyncProgressRepository(session).get(TOKEN) is None

    @pytest.mark.asyncio
    async def test_advance_is_monotonic(self, db: DatabaseManager) -> None:
        for block in (109, 119, 110, 119):
            async with db.get_async_session() as session:
                await SyncProgressRepository(session).advance(TOKEN, block)

        async with db.get_async_session() as session:
            progress = await SyncProgressRepository(session).get(TOKEN)

        assert progress is not None
        assert progress.last_synced_block == 119

    @pytest.mark.asyncio
    async def test_list_all(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = SyncProgressRepository(session)
            await repo.advance(TOKEN, 10)
            await repo.advance(ALICE, 20)

        async with db.get_async_session() as session:
            rows = await SyncProgressRepository(session).list_all()

        assert {(r.contract_address, r.last_synced_block) for r in rows} == {(TOKEN, 10), (ALICE, 20)}
