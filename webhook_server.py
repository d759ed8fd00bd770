"""
FastAPI server for the salvage escrow settlement service
Hosts gateway webhooks, vendor and operator routes, and the enforcement scheduler
"""
from contextlib import asynccontextmanager
import logging
import os
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from caching.simple_cache import auction_cache, wallet_cache
from config import Config
from database import SessionLocal, create_tables
from handlers.admin_operations import router as admin_router
from handlers.auction_routes import router as auction_router
from handlers.payment_webhooks import router as webhook_router
from jobs.scheduler import EnforcementScheduler

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_startup_timestamp = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, start the scheduler; stop it on shutdown"""
    global _startup_timestamp
    logger.info(f"🔧 Worker {os.getpid()} starting...")
    Config.log_configuration()
    create_tables()

    scheduler = None
    if Config.ENABLE_SCHEDULER:
        scheduler = EnforcementScheduler()
        scheduler.start()
    app.state.scheduler = scheduler
    _startup_timestamp = time.time()

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title="Salvage Escrow Settlement",
    description="Escrow ledger, auction settlement and payment reconciliation",
    lifespan=lifespan,
)

app.include_router(webhook_router)
app.include_router(auction_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check():
    """Liveness plus a database round trip"""
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"❌ HEALTH_DB_FAILED: {e}")
        return JSONResponse(content={"status": "unhealthy", "database": "unreachable"}, status_code=503)

    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "service": "salvage-escrow-settlement",
        "scheduler_running": bool(scheduler and scheduler.scheduler.running),
        "uptime_seconds": round(time.time() - _startup_timestamp, 2) if _startup_timestamp else 0,
        "caches": {cache.name: cache.get_stats() for cache in (wallet_cache, auction_cache)},
    }
