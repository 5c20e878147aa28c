# main.py
"""Main application: builds the service container and checks the local database on startup"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from config import settings
from services.logger_config import setup_logging
from services.factory import create_container, get_embedding_backend
from api.endpoints import router

setup_logging()
logger = logging.getLogger(settings.LOGGER_NAME)


async def load_embedding_backend(container) -> None:
    """Load the embedding model off the event loop and register it with the gate."""
    try:
        backend = await asyncio.to_thread(get_embedding_backend, container.settings)
        container.gate.register_backend(backend)
    except Exception as e:
        logger.error(f"Failed to load embedding model: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting application...")

    container = create_container(settings)
    app.state.container = container

    state = await container.controller.check()
    logger.info(f"Database initialized (state: {state.value})")

    model_task = asyncio.create_task(load_embedding_backend(container))
    logger.info("Services initialized")
    yield

    logger.info("Shutting down services...")
    if not model_task.done():
        model_task.cancel()
    await container.aclose()

    logger.info("Application shutdown complete")

app = FastAPI(
    title=settings.APP_TITLE,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.include_router(router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT, log_level="info")
