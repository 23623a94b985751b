import asyncio
import logging

from fastapi import FastAPI
from contextlib import asynccontextmanager

from clinical_alerts.config import settings
from clinical_alerts.core.logging import configure_logging
from clinical_alerts.database import Base, engine, SessionLocal
from clinical_alerts.models import alert_models  # noqa: F401
from clinical_alerts.routers import alerts
from clinical_alerts.services.alert_engine.background_worker import AlertEngineWorker

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan: create tables, then run the alert worker on the
    application event loop when enabled.
    """
    logger.info("Starting Clinical Alert Engine...")

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created")
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")

    worker = None
    worker_task = None
    if settings.ALERT_WORKER_ENABLED:
        worker = AlertEngineWorker(SessionLocal)
        worker_task = asyncio.create_task(worker.start())
        logger.info("Alert Engine Worker started")
    else:
        logger.info("Alert Engine Worker disabled (set ALERT_WORKER_ENABLED=true to enable)")

    yield

    logger.info("Shutting down Clinical Alert Engine...")
    if worker is not None:
        await worker.stop()
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutdown complete")


app = FastAPI(
    title="Clinical Alert Engine",
    description="Rule-based clinical metric alerting with deduplication, SLA escalation and notifications",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(alerts.router)
app.include_router(alerts.rules_router)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "worker_enabled": settings.ALERT_WORKER_ENABLED
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinical_alerts.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False
    )
