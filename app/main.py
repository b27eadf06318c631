"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.routers import fees, tasks, users, wallet

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start the settlement sweeps, stop them on shutdown."""
    from app.database import async_session_factory
    from app.redis import close_redis_pool
    from app.services.scheduler import build_default_scheduler

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = build_default_scheduler(async_session_factory)
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await close_redis_pool()


app = FastAPI(
    title="irlwork settlement",
    description="Task lifecycle, escrow and clearing-window payments for the agent/worker marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tasks.router)
app.include_router(wallet.router)
app.include_router(users.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
