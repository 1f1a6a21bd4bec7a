"""Error taxonomy shared by the chain, storage and sync layers."""


class SyncError(Exception):
    """Base exception for transfer synchronization errors."""


class ConnectivityError(SyncError):
    """Raised on transient RPC/network failure.

    Retrying the same range or lookup is always safe.
    """


class RangeTooLargeError(SyncError):
    """Raised when the endpoint rejects a log query as too large.

    The caller must shrink the requested block window.
    """


class PersistenceError(SyncError):
    """Raised when a store transaction fails.

    The transaction has been fully rolled back, so the batch may be retried.
    """


class FatalSubscriptionError(SyncError):
    """Raised when the real-time channel can no longer be sustained."""
