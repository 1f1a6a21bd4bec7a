"""Tests for raw log parsing and Transfer decoding."""

from __future__ import annotations

import pytest
from hexbytes import HexBytes

from transfer_sync.chain.models import TRANSFER_TOPIC, LogDecodingError, RawLog, TransferEvent

SENDER = "0x1234567890abcdef1234567890abcdef12345678"
RECIPIENT = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TX_HASH = "0x" + "ab" * 32
BLOCK_HASH = "0x" + "cd" * 32


def test_transfer_topic_is_keccak_of_signature() -> None:
    assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class TestRawLogFromRpc:
    def test_from_web3_log(self) -> None:
        raw = {
            "address": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
            "topics": [
                HexBytes(TRANSFER_TOPIC),
                HexBytes("0x" + "00" * 12 + SENDER[2:]),
                HexBytes("0x" + "00" * 12 + RECIPIENT[2:]),
            ],
            "data": HexBytes("0x" + format(42, "064x")),
            "blockNumber": 110,
            "blockHash": HexBytes(BLOCK_HASH),
            "transactionHash": HexBytes(TX_HASH),
            "logIndex": 3,
            "removed": False,
        }

        log = RawLog.from_rpc(raw)

        assert log.address == "0x5fbdb2315678afecb367f032d93f642f64180aa3"
        assert log.topics[0] == TRANSFER_TOPIC
        assert log.block_number == 110
        assert log.block_hash == BLOCK_HASH
        assert log.tx_hash == TX_HASH
        assert log.log_index == 3
        assert log.removed is False

    def test_from_json_rpc_notification(self) -> None:
        raw = {
            "address": "0x5fbdb2315678afecb367f032d93f642f64180aa3",
            "topics": [TRANSFER_TOPIC, "0x" + "00" * 12 + SENDER[2:], "0x" + "00" * 12 + RECIPIENT[2:]],
            "data": "0x" + format(42, "064x"),
            "blockNumber": "0x6e",
            "blockHash": BLOCK_HASH,
            "transactionHash": TX_HASH,
            "logIndex": "0x3",
            "removed": True,
        }

        log = RawLog.from_rpc(raw)

        assert log.block_number == 110
        assert log.log_index == 3
        assert log.removed is True


class TestTransferEvent:
    def _log(self, *, topics: tuple[str, ...] | None = None, data: str | None = None) -> RawLog:
        return RawLog(
            address="0x5fbdb2315678afecb367f032d93f642f64180aa3",
            topics=topics
            or (TRANSFER_TOPIC, "0x" + "00" * 12 + SENDER[2:], "0x" + "00" * 12 + RECIPIENT[2:]),
            data=data or "0x" + format(10**30, "064x"),
            block_number=110,
            block_hash=BLOCK_HASH,
            tx_hash=TX_HASH,
            log_index=3,
        )

    def test_decodes_addresses_and_amount(self) -> None:
        event = TransferEvent.from_raw_log(self._log(), block_timestamp=1_700_000_000)

        assert event.from_address == SENDER
        assert event.to_address == RECIPIENT
        assert event.amount == str(10**30)
        assert event.block_number == 110
        assert event.block_timestamp == 1_700_000_000
        assert (event.tx_hash, event.log_index) == (TX_HASH, 3)

    def test_max_uint256_keeps_precision(self) -> None:
        max_uint = 2**256 - 1
        event = TransferEvent.from_raw_log(self._log(data="0x" + "f" * 64), block_timestamp=0)
        assert event.amount == str(max_uint)
        assert len(event.amount) == 78

    def test_rejects_indexed_value_variant(self) -> None:
        # ERC721 Transfer carries tokenId as a fourth topic and no data.
        topics = (TRANSFER_TOPIC, "0x" + "00" * 32, "0x" + "00" * 32, "0x" + "00" * 31 + "01")
        with pytest.raises(LogDecodingError):
            TransferEvent.from_raw_log(self._log(topics=topics, data="0x"), block_timestamp=0)

    def test_rejects_empty_data(self) -> None:
        log = RawLog(
            address="0x5fbdb2315678afecb367f032d93f642f64180aa3",
            topics=(TRANSFER_TOPIC, "0x" + "00" * 32, "0x" + "00" * 32),
            data="0x",
            block_number=1,
            block_hash=BLOCK_HASH,
            tx_hash=TX_HASH,
            log_index=0,
        )
        with pytest.raises(LogDecodingError):
            TransferEvent.from_raw_log(log, block_timestamp=0)
