"""FastAPI application entry point for the MCA Platform API."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import uvicorn
from fastapi import FastAPI

from mca_platform.app.config import get_settings
from mca_platform.infra.database import async_session, init_db
from mca_platform.services.agent_router import validate_routing_table
from mca_platform.services.dispatch_worker import worker
from mca_platform.services.followup_runner import MorningFollowUpRunner

logger = logging.getLogger(__name__)


def seconds_until_next_run(hour: int, tz_name: str, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next ``hour``:00 in ``tz_name``."""
    tz = ZoneInfo(tz_name)
    now = now or datetime.now(tz)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def morning_followup_loop():
    """Run the morning follow-up batch once a day at the configured hour."""
    settings = get_settings()
    while True:
        delay = seconds_until_next_run(settings.followup_hour, settings.followup_timezone)
        logger.info("Morning follow-up scheduled in %.0f minutes", delay / 60)
        await asyncio.sleep(delay)
        try:
            async with async_session() as db:
                counts = await MorningFollowUpRunner(db).run()
                logger.info("Morning follow-up: %s", counts)
        except Exception as e:
            logger.error("Morning follow-up error: %s", e, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database, check routing, start scheduler."""
    await init_db()
    validate_routing_table()

    settings = get_settings()
    scheduler_task = None
    if settings.followup_schedule_enabled:
        scheduler_task = asyncio.create_task(morning_followup_loop())

    yield

    if scheduler_task:
        scheduler_task.cancel()
    await worker.drain()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="MCA Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from mca_platform.app.routes.agent import router as agent_router
from mca_platform.app.routes.sms_webhook import router as sms_webhook_router
from mca_platform.app.routes.ws import router as ws_router

app.include_router(agent_router)
app.include_router(sms_webhook_router)
app.include_router(ws_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "mca-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "mca_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
