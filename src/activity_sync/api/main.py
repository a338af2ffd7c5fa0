"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlmodel import SQLModel

from activity_sync.api.deps import require_admin
from activity_sync.api.routes import credentials, status as status_routes, sync as sync_routes
from activity_sync.db.engine import get_engine, import_models


def create_app(engine=None) -> FastAPI:
    """Build and return the FastAPI app."""

    engine = engine if engine is not None else get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        import_models()
        SQLModel.metadata.create_all(engine)
        yield

    app = FastAPI(
        title="Activity Sync API",
        description="Credential-driven sync of gaming, media and coding activity",
        version="0.1.0",
        lifespan=lifespan,
    )

    admin = [Depends(require_admin)]
    app.include_router(credentials.router, prefix="/credentials", tags=["credentials"], dependencies=admin)
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"], dependencies=admin)
    app.include_router(status_routes.router, tags=["status"])

    return app
