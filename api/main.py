"""
Fundraising Graph API — FastAPI application entry point.

Run with: uvicorn api.main:app --reload --port 8000

The app hosts the crawl engine: crawl endpoints start background runs in
this process, and (unless RUN_SCHEDULER=false) the recurring schedule too.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.loader import load_settings
from engine import CrawlEngine
from scheduler.jobs import CrawlScheduler
from .database import async_session, init_db
from .routers import fundraising

logger = logging.getLogger("fundgraph.api")

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def _scheduler_enabled() -> bool:
    return os.getenv("RUN_SCHEDULER", "true").strip().lower() not in ("0", "false", "no", "off")


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or DEFAULT_CORS_ORIGINS


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize DB, build the crawl engine, recover interrupted crawls."""
    logger.info("🚀 Starting Fundraising Graph API...")
    await init_db()
    logger.info("✅ Database initialized")

    engine = CrawlEngine(load_settings(), async_session)
    app.state.crawl_engine = engine

    scheduler = None
    if _scheduler_enabled():
        scheduler = CrawlScheduler(engine, engine.settings.schedule)
        resumed = await scheduler.start()
    else:
        resumed = await engine.recover_on_startup()
    if resumed:
        logger.info(f"🔁 Resumed crawls: {', '.join(resumed)}")

    yield

    logger.info("👋 Shutting down Fundraising Graph API")
    if scheduler:
        scheduler.shutdown()
    await engine.shutdown()


app = FastAPI(
    title="Fundraising Graph",
    description="Crypto fundraising rounds, projects and the investors behind them",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# CORS: allow dashboard origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(fundraising.router, prefix="/api")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "fundgraph"}
