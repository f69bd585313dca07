"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.errors import register_error_handlers
from .api.router import router
from .config import settings
from .database import close_db, init_db
from .tasks.worker import app as procrastinate_app
from .utils.logging import setup_logging
from .wiring import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    setup_logging()
    await init_db()
    services = build_services()
    app.state.token_cache = services.token_cache
    app.state.registry = services.registry
    app.state.repository_service = services.repository_service
    app.state.reward_service = services.reward_service
    await procrastinate_app.open_async()
    yield
    # Shutdown
    await procrastinate_app.close_async()
    await services.close()
    await close_db()


app = FastAPI(
    title="Bountypool",
    description="Bounties and reward pools for GitHub repositories",
    version="0.1.0",
    lifespan=lifespan,
)

register_error_handlers(app)

# Include routes
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bountypool.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )
