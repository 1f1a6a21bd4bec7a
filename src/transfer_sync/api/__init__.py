"""Read API - FastAPI application over the indexed transfers."""

from transfer_sync.api.app import create_app

__all__ = ["create_app"]
