"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from timeclock.db.engine import get_engine
from timeclock.api.routes import devices


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        yield

    app = FastAPI(
        title="Time Clock Sync API",
        description="Terminal sync and attendance reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(devices.router, prefix="/devices", tags=["devices"])

    return app


# Module-level app instance for uvicorn
app = create_app()
