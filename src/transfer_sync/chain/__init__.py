"""Chain access: RPC client, log models, subscriptions and timestamp resolution."""

from transfer_sync.chain.client import ChainClient, ChainDataSource, RateLimiter
from transfer_sync.chain.models import (
    TRANSFER_EVENT_SIGNATURE,
    TRANSFER_TOPIC,
    LogDecodingError,
    RawLog,
    TransferEvent,
)
from transfer_sync.chain.subscription import (
    LogSubscription,
    PollingLogSubscription,
    WebSocketLogSubscription,
)
from transfer_sync.chain.timestamps import BlockTimestampResolver

__all__ = [
    "BlockTimestampResolver",
    "ChainClient",
    "ChainDataSource",
    "LogDecodingError",
    "LogSubscription",
    "PollingLogSubscription",
    "RateLimiter",
    "RawLog",
    "TRANSFER_EVENT_SIGNATURE",
    "TRANSFER_TOPIC",
    "TransferEvent",
    "WebSocketLogSubscription",
]
