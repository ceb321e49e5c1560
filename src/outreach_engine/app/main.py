"""FastAPI application entry point for the Outreach Engine API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from outreach_engine.app.config import get_settings
from outreach_engine.app.dependencies import get_rule_cache
from outreach_engine.infra.database import async_session, init_db
from outreach_engine.services.scheduler import OutreachScheduler

logger = logging.getLogger(__name__)


async def scheduler_loop(interval_hours: float):
    """Run the outreach scheduler every ``interval_hours``."""
    while True:
        try:
            async with async_session() as db:
                results = await OutreachScheduler(db, rule_cache=get_rule_cache()).tick()
                logger.info("Outreach scheduler: %s", results)
        except Exception as e:
            logger.error("Outreach scheduler error: %s", e)
        await asyncio.sleep(interval_hours * 3600)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database on startup."""
    await init_db()

    settings = get_settings()
    task = None
    if settings.run_scheduler_in_process:
        task = asyncio.create_task(scheduler_loop(settings.scheduler_interval_hours))
    yield
    if task is not None:
        task.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Outreach Engine API",
    lifespan=lifespan,
    debug=settings.debug,
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from outreach_engine.app.routes.automation import router as automation_router
from outreach_engine.app.routes.scheduler import router as scheduler_router

app.include_router(automation_router)
app.include_router(scheduler_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "outreach-engine"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "outreach_engine.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
