"""
FastAPI application entry point for the tracker.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from puppy_tracker.config import get_settings
from puppy_tracker.dependencies import (
    get_activity_store,
    get_synchronizer,
    reset_dependencies,
)
from puppy_tracker.routes import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    sessions = get_synchronizer()
    # Built up front so it follows every auth transition from the start.
    get_activity_store()
    await sessions.initialize()
    yield
    reset_dependencies()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Puppy Activity Tracker", version="0.1.0", lifespan=lifespan
    )
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
