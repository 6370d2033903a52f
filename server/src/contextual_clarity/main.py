"""FastAPI application entry point for Contextual Clarity."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contextual_clarity import __version__
from contextual_clarity.api.routes import get_connection_registry, router
from contextual_clarity.config import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info(f"Starting Contextual Clarity Server v{__version__}")
    settings = get_settings()
    logger.info(f"Debug mode: {settings.debug}")

    yield

    # Shutdown
    closed = await get_connection_registry().close_all()
    logger.info(f"Shutting down Contextual Clarity Server ({closed} connection(s) closed)")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Contextual Clarity",
        description="Spaced-repetition recall sessions with a Socratic AI tutor",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "contextual_clarity.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
