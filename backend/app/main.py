import asyncio
import re
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.models_sqlalchemy import engine
from app.routers import bricklink_webhooks, inventory_sync, marketplace_credentials
from app.utils.logger import logger

API_VERSION = "1.0.0"

app = FastAPI(title="Brick Store Connector API", version=API_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

app.include_router(bricklink_webhooks.router)
app.include_router(marketplace_credentials.router)
app.include_router(inventory_sync.router)


def _mask_database_url(url: str) -> str:
    return re.sub(r"://([^:/@]+):[^@]*@", r"://\1:****@", url)


def _sync_loop_wanted() -> bool:
    if not settings.DATABASE_URL.startswith("postgres"):
        logger.info("Non-Postgres database (%s): marketplace sync loop stays off",
                    _mask_database_url(settings.DATABASE_URL))
        return False
    logger.info("Database: %s", _mask_database_url(settings.DATABASE_URL))
    if not settings.MARKETPLACE_SYNC_LOOP_ENABLED:
        logger.info("MARKETPLACE_SYNC_LOOP_ENABLED is off: marketplace sync loop stays off")
        return False
    return True


@app.middleware("http")
async def tag_request(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    logger.info("%s %s request_id=%s", request.method, request.url.path, request_id)
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("Unhandled error on %s request_id=%s", request.url.path, request_id)
        response = JSONResponse(
            {"error": "internal_error", "request_id": request_id, "type": type(e).__name__},
            status_code=500,
        )
    else:
        logger.info("%s -> %s request_id=%s", request.url.path, response.status_code, request_id)
    response.headers["X-Request-ID"] = request_id
    return response


@app.on_event("startup")
async def on_startup():
    logger.info("Brick Store Connector API %s starting", API_VERSION)

    if not settings.WEBHOOK_PUBLIC_BASE_URL:
        logger.warning("WEBHOOK_PUBLIC_BASE_URL is empty; BrickLink callbacks cannot be registered")

    if not _sync_loop_wanted():
        return

    from app.workers import run_marketplace_sync_loop

    app.state.sync_task = asyncio.create_task(run_marketplace_sync_loop())
    logger.info("Marketplace sync loop scheduled every %ss",
                settings.MARKETPLACE_SYNC_LOOP_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "sync_task", None)
    if task is not None and not task.done():
        task.cancel()


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).scalar()
    except Exception as e:
        logger.exception("Database ping failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"database unreachable: {type(e).__name__}",
        )
    return {"status": "ok", "database": "reachable"}


@app.get("/")
async def root():
    return {"name": "Brick Store Connector API", "version": API_VERSION, "docs": "/docs"}
