"""Sync engine - the checkpointed INIT/CATCHUP/REALTIME state machine."""

from transfer_sync.sync.orchestrator import RetryPolicy, SyncOrchestrator, SyncState, SyncStats

__all__ = [
    "RetryPolicy",
    "SyncOrchestrator",
    "SyncState",
    "SyncStats",
]
