"""transfer-sync - checkpointed Transfer event indexer."""

__version__ = "0.1.0"
