from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .db import init_db
from .core.config import get_settings
from .core.errors import RewardsError
from .core.redis import ping_redis
from .core.nats import nats_connect, nats_close
from .services.expiry import run_expiry_sweep
from .routers import checkins, points, badges, rewards, redemptions, destinations, promotions

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)
scheduler = AsyncIOScheduler()

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    if settings.enable_nats:
        try:
            await nats_connect()
        except Exception as exc:
            logger.warning("NATS unavailable at startup: %s", exc)
    if not await ping_redis():
        logger.warning("Redis unavailable at startup; rate limits and cache are bypassed until it recovers")

    # Cron: expire lapsed redemptions, refund points and restore stock
    if settings.enable_scheduler:
        scheduler.add_job(
            run_expiry_sweep, "interval",
            seconds=settings.expiry_sweep_interval_sec,
            id="expire-redemptions", max_instances=1, coalesce=True, replace_existing=True,
        )
        scheduler.start()

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    try:
        await nats_close()
    except Exception as exc:
        logger.warning("NATS close failed: %s", exc)

app = FastAPI(title="travel-rewards-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(RewardsError)
async def rewards_error_handler(request: Request, exc: RewardsError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(checkins.router)
app.include_router(points.router)
app.include_router(badges.router)
app.include_router(rewards.router)
app.include_router(redemptions.router)
app.include_router(destinations.router)
app.include_router(promotions.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "travel-rewards-svc"}

Instrumentator().instrument(app).expose(app)
