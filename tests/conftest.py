"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from transfer_sync.chain.models import TRANSFER_TOPIC, RawLog
from transfer_sync.storage.database import DatabaseManager

TOKEN = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ALICE = "0x1234567890abcdef1234567890abcdef12345678"
BOB = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


def _address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


@pytest.fixture
def token_address() -> str:
    """Watched token contract address."""
    return TOKEN


@pytest.fixture
def make_log() -> Callable[..., RawLog]:
    """Factory for Transfer logs."""

    def _make(
        block_number: int,
        log_index: int = 0,
        *,
        tx_hash: str | None = None,
        sender: str = ALICE,
        recipient: str = BOB,
        amount: int = 1_000,
    ) -> RawLog:
        return RawLog(
            address=TOKEN,
            topics=(TRANSFER_TOPIC, _address_topic(sender), _address_topic(recipient)),
            data="0x" + format(amount, "064x"),
            block_number=block_number,
            block_hash="0x" + format(block_number, "064x"),
            tx_hash=tx_hash or "0x" + format(block_number * 1000 + log_index, "064x"),
            log_index=log_index,
        )

    return _make


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'transfers.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
