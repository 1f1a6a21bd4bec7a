"""Service wiring for the transfer sync engine.

This module provides the SyncService class that builds the database,
RPC client and orchestrator from settings and manages their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from transfer_sync.chain.client import ChainClient
from transfer_sync.chain.timestamps import BlockTimestampResolver
from transfer_sync.config import Settings, get_settings
from transfer_sync.exceptions import PersistenceError
from transfer_sync.storage.database import DatabaseManager
from transfer_sync.storage.store import TransferStore
from transfer_sync.sync.orchestrator import RetryPolicy, SyncOrchestrator, SyncStats

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SyncService:
    """Owns the long-lived handles and runs the orchestrator.

    Example:
        ```python
        from transfer_sync.config import get_settings
        from transfer_sync.service import SyncService

        service = SyncService(get_settings())
        await service.run()  # until stop() or a fatal SyncError
        ```
    """

    def __init__(self, settings: Settings | None = None, *, init_schema: bool = True) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            init_schema: Create missing tables on start.
        """
        self._settings = settings or get_settings()
        self._init_schema = init_schema

        self._state = ServiceState.STOPPED

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._chain_client: ChainClient | None = None
        self._orchestrator: SyncOrchestrator | None = None

        self._run_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def orchestrator(self) -> SyncOrchestrator | None:
        return self._orchestrator

    @property
    def stats(self) -> SyncStats | None:
        return self._orchestrator.stats if self._orchestrator else None

    async def start(self) -> None:
        """Build all components and prepare the schema.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        logger.info("Starting sync service: %s", self._settings.redacted_summary())

        try:
            await self._initialize_components()
            await self._check_connectivity()
            self._state = ServiceState.RUNNING
            logger.info("Sync service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            logger.error("Failed to start sync service: %s", e)
            await self._cleanup()
            raise

    async def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
        )
        if self._init_schema:
            await self._db_manager.init_schema_async()

        logger.debug("Initializing chain client...")
        self._chain_client = ChainClient(
            settings.rpc.url,
            fallback_rpc_url=settings.rpc.fallback_url,
            ws_url=settings.rpc.ws_url,
            redis=self._redis,
            confirmations=settings.rpc.confirmations,
            poa=settings.rpc.poa,
            max_requests_per_second=settings.rpc.max_requests_per_second,
            poll_interval_seconds=settings.sync.poll_interval_seconds,
            poll_window=settings.sync.batch_window,
            ws_flush_interval_seconds=settings.sync.ws_flush_interval_seconds,
        )

        resolver = BlockTimestampResolver(
            self._chain_client,
            chunk_size=settings.sync.timestamp_chunk_size,
            chunk_delay=settings.sync.timestamp_chunk_delay_ms / 1000,
        )
        self._orchestrator = SyncOrchestrator(
            self._chain_client,
            TransferStore(self._db_manager),
            resolver,
            contract_address=settings.sync.contract_address,
            start_block=settings.sync.start_block,
            batch_window=settings.sync.batch_window,
            retry=RetryPolicy(
                initial_delay=settings.sync.retry_initial_delay_seconds,
                max_delay=settings.sync.retry_max_delay_seconds,
                max_attempts=settings.sync.retry_max_attempts,
            ),
            resubscribe=settings.sync.resubscribe,
            queue_size=settings.sync.queue_size,
        )

    async def _check_connectivity(self) -> None:
        """Fail fast on an unreachable database; only warn about the RPC endpoint."""
        if self._db_manager is None or self._chain_client is None:
            raise RuntimeError("Components were not initialized")

        if not await self._db_manager.health_check():
            raise PersistenceError("Database is not reachable")
        if not await self._chain_client.health_check():
            logger.warning("RPC endpoint is not reachable yet; sync will keep retrying")

    async def request_stop(self) -> None:
        """Ask the orchestrator to stop; run() releases resources once it returns."""
        if self._orchestrator:
            await self._orchestrator.stop()

    async def stop(self) -> None:
        """Stop the orchestrator after its current batch and release resources."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping sync service...")

        if self._orchestrator:
            await self._orchestrator.stop()
        if self._run_task and not self._run_task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task

        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Sync service stopped")

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._chain_client:
            await self._chain_client.aclose()
            self._chain_client = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and synchronize until stopped.

        Raises:
            SyncError: If the orchestrator fails fatally.
        """
        await self.start()
        orchestrator = self._orchestrator
        if orchestrator is None:
            raise RuntimeError("Orchestrator was not initialized")

        self._run_task = asyncio.create_task(orchestrator.run(), name="sync-orchestrator")
        try:
            await self._run_task
        except Exception:
            self._state = ServiceState.ERROR
            raise
        finally:
            self._run_task = None
            await self.stop()

    async def __aenter__(self) -> SyncService:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
