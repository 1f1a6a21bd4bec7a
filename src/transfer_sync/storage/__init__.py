"""Storage layer - Database schemas, repositories and batch persistence."""

from transfer_sync.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from transfer_sync.storage.models import Base, SyncProgressModel, TransferModel
from transfer_sync.storage.repos import (
    SyncProgressDTO,
    SyncProgressRepository,
    TransferDTO,
    TransferRepository,
)
from transfer_sync.storage.store import PersistAck, TransferStore

__all__ = [
    "Base",
    "DatabaseManager",
    "PersistAck",
    "SyncProgressDTO",
    "SyncProgressModel",
    "SyncProgressRepository",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "TransferStore",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
