from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging

from app.core.coordination import get_coordination_store
from app.core.database import init_db
from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def setup_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events handler."""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}")

    # Message log tables
    init_db()
    logger.info("Database initialized")

    # Queues, client states and conflicts live in the coordination store
    get_coordination_store()
    logger.info(f"Coordination store ready ({settings.COORDINATION_BACKEND})")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.PROJECT_NAME}")
