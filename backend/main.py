from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import create_store, get_store

# ENV
from config.env import (
    CORS_ALLOWED_ORIGINS,
    ENV,
    ESCROW_SWEEP_ENABLED,
    LOG_LEVEL,
    validate_production_env,
)
from utils.errors import EngineError
from utils.indexes import ensure_indexes

# ROUTES
from routes.admin import router as admin_router
from routes.orders import router as orders_router
from routes.vendor import router as vendor_router
from routes.webhooks import router as webhook_router

# WORKERS
from workers.escrow_release_worker import escrow_release_worker

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="Marketplace Settlement API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("ENGINE_ERROR path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router, prefix="/api")
app.include_router(vendor_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(webhook_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db(request: Request):
    await get_store(request).ping()
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def startup():
    if getattr(app.state, "store", None) is None:
        app.state.store = create_store()

    await ensure_indexes(app.state.store)

    if ESCROW_SWEEP_ENABLED:
        app.state.escrow_worker = asyncio.create_task(escrow_release_worker(app.state.store))


@app.on_event("shutdown")
async def shutdown():
    worker = getattr(app.state, "escrow_worker", None)
    if worker:
        worker.cancel()
