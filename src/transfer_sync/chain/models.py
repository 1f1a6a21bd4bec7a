"""Data models for raw chain logs and decoded Transfer events.

Logs reach the sync engine through two paths with different encodings:
web3's `eth_getLogs` results (ints and `HexBytes`) and raw `eth_subscribe`
notifications (0x-prefixed hex quantities). `RawLog.from_rpc` accepts both.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from web3 import AsyncWeb3

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = AsyncWeb3.to_hex(AsyncWeb3.keccak(text=TRANSFER_EVENT_SIGNATURE))


class LogDecodingError(ValueError):
    """Raised when a log does not have the shape of the watched event."""


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    text = str(value)
    return int(text, 16) if text.startswith("0x") else int(text)


def _get(raw: Mapping[str, Any], camel: str, snake: str) -> Any:
    if camel in raw:
        return raw[camel]
    return raw.get(snake)


def _topic_to_address(topic: str) -> str:
    return ("0x" + topic[2:][-40:]).lower()


@dataclass(frozen=True)
class RawLog:
    """A single log entry as returned by the RPC endpoint."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> RawLog:
        """Build a RawLog from a web3 log or a raw JSON-RPC log object."""
        return cls(
            address=_to_hex(raw["address"]),
            topics=tuple(_to_hex(t) for t in raw.get("topics") or ()),
            data=_to_hex(raw.get("data") or b""),
            block_number=_to_int(_get(raw, "blockNumber", "block_number")),
            block_hash=_to_hex(_get(raw, "blockHash", "block_hash")),
            tx_hash=_to_hex(_get(raw, "transactionHash", "transaction_hash")),
            log_index=_to_int(_get(raw, "logIndex", "log_index")),
            removed=bool(raw.get("removed", False)),
        )


@dataclass(frozen=True)
class TransferEvent:
    """A decoded Transfer event, ready for persistence.

    `(tx_hash, log_index)` is the natural identity key. Addresses are
    lower-case hex and `amount` is the uint256 value as a decimal string.
    """

    tx_hash: str
    log_index: int
    from_address: str
    to_address: str
    amount: str
    block_number: int
    block_hash: str
    block_timestamp: int

    @classmethod
    def from_raw_log(cls, log: RawLog, *, block_timestamp: int) -> TransferEvent:
        """Decode a Transfer log.

        Raises:
            LogDecodingError: If the log is not a `Transfer(address,address,uint256)`.
        """
        if len(log.topics) != 3:
            raise LogDecodingError(f"Expected 3 topics for Transfer, got {len(log.topics)}")
        payload = log.data[2:]
        if not payload or len(payload) > 64:
            raise LogDecodingError(f"Expected a single uint256 data word, got {len(payload) // 2} bytes")
        return cls(
            tx_hash=log.tx_hash,
            log_index=log.log_index,
            from_address=_topic_to_address(log.topics[1]),
            to_address=_topic_to_address(log.topics[2]),
            amount=str(int(payload, 16)),
            block_number=log.block_number,
            block_hash=log.block_hash,
            block_timestamp=block_timestamp,
        )
