"""Tests for live log subscriptions."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import websockets

from transfer_sync.chain.models import TRANSFER_TOPIC
from transfer_sync.chain.subscription import PollingLogSubscription, WebSocketLogSubscription
from transfer_sync.exceptions import ConnectivityError, FatalSubscriptionError, RangeTooLargeError

TOKEN = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
SUBSCRIPTION_ID = "0x9cef478923ff08bf67fde6c64013158d"


def _rpc_log(block_number: int, log_index: int, *, removed: bool = False) -> dict[str, Any]:
    return {
        "address": TOKEN,
        "topics": [TRANSFER_TOPIC, "0x" + "00" * 32, "0x" + "00" * 32],
        "data": "0x" + "00" * 31 + "01",
        "blockNumber": hex(block_number),
        "blockHash": "0x" + format(block_number, "064x"),
        "transactionHash": "0x" + format(block_number * 100 + log_index, "064x"),
        "logIndex": hex(log_index),
        "removed": removed,
    }


class FakeWebSocket:
    """Scripted stand-in for a websockets client connection."""

    def __init__(self, subscribe_response: dict[str, Any] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        self.incoming.put_nowait(
            json.dumps(subscribe_response or {"jsonrpc": "2.0", "id": 1, "result": SUBSCRIPTION_ID})
        )

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def push_log(self, log: dict[str, Any], *, subscription: str = SUBSCRIPTION_ID) -> None:
        self.incoming.put_nowait(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "method": "eth_subscription",
                    "params": {"subscription": subscription, "result": log},
                }
            )
        )


def _ws_subscription(**kwargs: Any) -> WebSocketLogSubscription:
    return WebSocketLogSubscription(
        "ws://localhost:8546",
        address=TOKEN,
        topic=TRANSFER_TOPIC,
        flush_interval=kwargs.pop("flush_interval", 0.05),
        **kwargs,
    )


async def _next(subscription, timeout: float = 2.0):
    return await asyncio.wait_for(anext(subscription), timeout)


# ============================================================================
# WebSocketLogSubscription
# ============================================================================


class TestWebSocketLogSubscription:
    @pytest.mark.asyncio
    async def test_sends_eth_subscribe(self) -> None:
        ws = FakeWebSocket()
        with patch("transfer_sync.chain.subscription.websockets.connect", new=AsyncMock(return_value=ws)):
            async with _ws_subscription() as subscription:
                assert subscription.subscription_id == SUBSCRIPTION_ID

        request = ws.sent[0]
        assert request["method"] == "eth_subscribe"
        assert request["params"] == ["logs", {"address": TOKEN, "topics": [TRANSFER_TOPIC]}]
        assert ws.closed is True

    @pytest.mark.asyncio
    async def test_groups_logs_per_block(self) -> None:
        ws = FakeWebSocket()
        with patch("transfer_sync.chain.subscription.websockets.connect", new=AsyncMock(return_value=ws)):
            async with _ws_subscription() as subscription:
                ws.push_log(_rpc_log(100, 0))
                ws.push_log(_rpc_log(100, 1))
                ws.push_log(_rpc_log(101, 0))

                first = await _next(subscription)
                second = await _next(subscription)

        assert [(log.block_number, log.log_index) for log in first] == [(100, 0), (100, 1)]
        assert [(log.block_number, log.log_index) for log in second] == [(101, 0)]

    @pytest.mark.asyncio
    async def test_skips_removed_and_foreign_notifications(self) -> None:
        ws = FakeWebSocket()
        with patch("transfer_sync.chain.subscription.websockets.connect", new=AsyncMock(return_value=ws)):
            async with _ws_subscription() as subscription:
                ws.push_log(_rpc_log(100, 0, removed=True))
                ws.push_log(_rpc_log(100, 1), subscription="0xother")
                ws.incoming.put_nowait("not json")
                ws.push_log(_rpc_log(100, 2))

                batch = await _next(subscription)

        assert [log.log_index for log in batch] == [2]

    @pytest.mark.asyncio
    async def test_connection_closed_is_fatal_once(self) -> None:
        ws = FakeWebSocket()
        with patch("transfer_sync.chain.subscription.websockets.connect", new=AsyncMock(return_value=ws)):
            async with _ws_subscription() as subscription:
                ws.incoming.put_nowait(websockets.ConnectionClosed(None, None))

                with pytest.raises(FatalSubscriptionError):
                    await _next(subscription)
                with pytest.raises(StopAsyncIteration):
                    await _next(subscription)

    @pytest.mark.asyncio
    async def test_rejected_subscription(self) -> None:
        ws = FakeWebSocket({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "not supported"}})
        with patch("transfer_sync.chain.subscription.websockets.connect", new=AsyncMock(return_value=ws)):
            subscription = _ws_subscription()
            with pytest.raises(FatalSubscriptionError):
                await subscription.start()

        assert ws.closed is True

    @pytest.mark.asyncio
    async def test_connect_failure(self) -> None:
        connect = AsyncMock(side_effect=OSError("connection refused"))
        with patch("transfer_sync.chain.subscription.websockets.connect", new=connect):
            with pytest.raises(FatalSubscriptionError):
                await _ws_subscription().start()


# ============================================================================
# PollingLogSubscription
# ============================================================================


def _polling(source: MagicMock, **kwargs: Any) -> PollingLogSubscription:
    return PollingLogSubscription(
        source,
        address=TOKEN,
        topic=TRANSFER_TOPIC,
        from_block=kwargs.pop("from_block", 100),
        poll_interval=0.01,
        **kwargs,
    )


class TestPollingLogSubscription:
    @pytest.mark.asyncio
    async def test_cursor_advances_over_new_ranges(self, make_log) -> None:
        source = MagicMock()
        source.current_height = AsyncMock(return_value=104)
        source.get_logs = AsyncMock(side_effect=lambda a, t, lo, hi: [make_log(lo)] if lo == 100 else [])

        async with _polling(source, max_range=3) as subscription:
            batch = await _next(subscription)
            for _ in range(100):
                if subscription.cursor == 105:
                    break
                await asyncio.sleep(0.01)

        assert [log.block_number for log in batch] == [100]
        assert subscription.cursor == 105
        ranges = [call.args[2:] for call in source.get_logs.await_args_list]
        assert ranges[:2] == [(100, 102), (103, 104)]

    @pytest.mark.asyncio
    async def test_halves_window_on_range_too_large(self, make_log) -> None:
        source = MagicMock()
        source.current_height = AsyncMock(return_value=103)
        source.get_logs = AsyncMock(
            side_effect=[RangeTooLargeError("too many"), [make_log(100)], [make_log(102)]]
        )

        async with _polling(source, max_range=4) as subscription:
            first = await _next(subscription)
            second = await _next(subscription)

        ranges = [call.args[2:] for call in source.get_logs.await_args_list]
        assert ranges == [(100, 103), (100, 101), (102, 103)]
        assert first[0].block_number == 100
        assert second[0].block_number == 102

    @pytest.mark.asyncio
    async def test_source_failure_is_fatal(self) -> None:
        source = MagicMock()
        source.current_height = AsyncMock(side_effect=ConnectivityError("rpc down"))
        source.get_logs = AsyncMock()

        async with _polling(source) as subscription:
            with pytest.raises(FatalSubscriptionError):
                await _next(subscription)

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self) -> None:
        source = MagicMock()
        source.current_height = AsyncMock(return_value=0)
        source.get_logs = AsyncMock(return_value=[])

        subscription = _polling(source, from_block=1)
        await subscription.start()
        await subscription.close()

        with pytest.raises(StopAsyncIteration):
            await _next(subscription)
