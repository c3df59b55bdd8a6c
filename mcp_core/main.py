"""FastAPI entry-point exposing coordinator controls."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mcp_core.api.routes import router as agents_router
from mcp_core.api.routes import system_router
from mcp_core.config import config
from mcp_core.runtime import get_coordinator

logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    coordinator = get_coordinator()
    await coordinator.start()
    yield
    await coordinator.shutdown()


app = FastAPI(title=config.system_name, version=config.version, lifespan=lifespan)
app.include_router(agents_router)
app.include_router(system_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
