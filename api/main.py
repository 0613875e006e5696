"""FastAPI application for DCA strategies and their execution guard.

This module provides a minimal HTTP API service for:
- GET /health - Liveness and configured backends
- POST /strategies - Create a strategy (remote policies registered best-effort)
- GET /strategies - List strategies
- GET /strategies/{id} - Strategy state
- POST /strategies/{id}/pause | /resume - Lifecycle
- POST /strategies/{id}/execute - Manual "execute now" through the guard
- GET /strategies/{id}/ledger - Execution ledger
- GET /strategies/{id}/reconcile - Ledger vs counter reconciliation

Configuration:
- DATABASE_URL (optional; in-memory stores when unset)
- POLICY_REGISTRAR_URL / SIGNING_GATEWAY_URL (optional external services)
- DCA_API_SCHEDULER=1 runs the sweep loop inside this process
- No authentication (local network only)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from api.routes import strategies

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Optionally run the sweep loop on the same orchestrator that serves requests."""
    task = None
    if os.environ.get("DCA_API_SCHEDULER", "").lower() in ("1", "true", "yes"):
        orchestrator = strategies.get_orchestrator()
        logger.info("Starting in-process DCA scheduler")
        task = asyncio.create_task(orchestrator.run())
    yield
    if task is not None:
        orchestrator.stop()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title="DCA Guard API",
    description="API for DCA strategies, execution guard decisions and the execution ledger",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(strategies.router)

_api_start_time = time.time()


@app.get("/health")
async def health() -> dict[str, Any]:
    """Report liveness and which backends are configured."""
    orchestrator = strategies.get_orchestrator()
    return {
        "status": "ok",
        "uptime_seconds": int(time.time() - _api_start_time),
        "store": type(orchestrator.store).__name__,
        "ledger": type(orchestrator.ledger).__name__,
        "gateway": type(orchestrator.gateway).__name__,
        "registrar": type(orchestrator.registrar).__name__,
        "persistent": bool(os.environ.get("DATABASE_URL")),
        "dry_run": orchestrator.config.dry_run,
    }


@app.exception_handler(Exception)
async def global_exception_handler(_request, exc):
    """Global exception handler to ensure consistent error responses."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )
