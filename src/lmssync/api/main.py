"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lmssync.api.routes import matching, sync as sync_routes
from lmssync.sync.orchestrator import shutdown_orchestrator


def create_app() -> FastAPI:
    """Build and return the FastAPI app.

    Tables and migrations are applied when the engine is first built, on the
    first request that needs it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await shutdown_orchestrator()

    app = FastAPI(
        title="LMS Sync API",
        description="LMS to partner database synchronization engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(matching.router, prefix="/matching", tags=["matching"])

    return app


# Module-level app instance for uvicorn
app = create_app()
