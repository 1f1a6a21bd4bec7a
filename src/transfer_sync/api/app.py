"""Read-only HTTP API over the indexed transfers.

Routes are served at the root and, for existing clients, under `/api`.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from transfer_sync import __version__
from transfer_sync.storage.database import DatabaseManager
from transfer_sync.storage.repos import SyncProgressRepository, TransferDTO, TransferRepository

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

router = APIRouter(tags=["transfers"])


def _parse_positive_int(raw: str | None, default: int) -> int:
    """Parse the leading integer of a query value; zero or garbage means default."""
    if raw is None:
        return default
    match = _LEADING_INT.match(raw)
    if not match:
        return default
    return int(match.group(1)) or default


def _transfer_row(dto: TransferDTO) -> dict[str, Any]:
    return {
        "tx_hash": dto.tx_hash,
        "log_index": dto.log_index,
        "from_address": dto.from_address,
        "to_address": dto.to_address,
        "amount": dto.amount,
        "block_number": dto.block_number,
        "block_timestamp": dto.block_timestamp,
        "created_at": dto.created_at.isoformat() if dto.created_at else None,
    }


def _db(request: Request) -> DatabaseManager:
    db: DatabaseManager = request.app.state.db
    return db


@router.get("/transfers/{address}")
async def list_transfers(
    address: str,
    request: Request,
    page: str | None = None,
    limit: str | None = None,
) -> Any:
    page_n = max(1, _parse_positive_int(page, DEFAULT_PAGE))
    limit_n = min(MAX_LIMIT, max(1, _parse_positive_int(limit, DEFAULT_LIMIT)))
    offset = (page_n - 1) * limit_n

    try:
        async with _db(request).get_async_session() as session:
            repo = TransferRepository(session)
            rows = await repo.list_for_address(address, limit=limit_n, offset=offset)
            total = await repo.count_for_address(address)
    except SQLAlchemyError:
        logger.exception("Failed to query transfers for %s", address)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    return {
        "data": [_transfer_row(r) for r in rows],
        "pagination": {
            "page": page_n,
            "limit": limit_n,
            "totalItems": total,
            "totalPages": math.ceil(total / limit_n),
        },
    }


@router.get("/sync-status")
async def sync_status(request: Request) -> Any:
    try:
        async with _db(request).get_async_session() as session:
            progress = await SyncProgressRepository(session).list_all()
    except SQLAlchemyError:
        logger.exception("Failed to query sync status")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch sync status"})

    return [
        {"contract_address": p.contract_address, "last_synced_block": p.last_synced_block}
        for p in progress
    ]


def create_app(db: DatabaseManager) -> FastAPI:
    """Build the API application around an existing database manager.

    The manager's connections are disposed when the application shuts down.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await db.dispose_async()

    app = FastAPI(title="transfer-sync API", version=__version__, lifespan=lifespan)
    app.state.db = db
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}

    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app
