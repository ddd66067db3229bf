import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import alembic.config
import alembic.command
from app.core.config import settings
from app.core.database import engine, readonly_engine
from app.api.router import api_router

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


# Close the engines once everything is done and close all the sessions
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    try:
        await asyncio.to_thread(run_migrations)
        logger.info("Migrations applied successfully (or already up-to-date)")
    except Exception as e:
        logger.error(f"Migration error during startup: {e}")

    yield
    if readonly_engine is not engine:
        await readonly_engine.dispose()
    await engine.dispose()


app = FastAPI(title="AskData - natural language to data", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "message": "Welcome to AskData",
        "paths": ["insight", "exact", "prediction"],
    }
