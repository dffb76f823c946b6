from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, validate_production_env

# ERRORS
from utils.errors import RefundAccountingError
from utils.indexes import ensure_indexes

# ROUTES
from routes.orders import router as orders_router
from routes.refunds import router as refunds_router
from routes.returns import router as returns_router
from routes.reconciliation import router as reconciliation_router
from routes.reports import router as reports_router

# WORKERS
from workers.return_index_repair_worker import return_index_repair_worker

logger = logging.getLogger(__name__)
logger.info("ENV: %s", ENV)

validate_production_env()

app = FastAPI(
    title="Refund Ledger API",
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

@app.exception_handler(RefundAccountingError)
async def refund_accounting_error_handler(request: Request, exc: RefundAccountingError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "details": exc.details},
    )

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router, prefix="/api")
app.include_router(refunds_router, prefix="/api")
app.include_router(returns_router, prefix="/api")
app.include_router(reconciliation_router, prefix="/api")
app.include_router(reports_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def startup():
    await ensure_indexes(get_db())
    # held on app.state so the task is not garbage collected
    app.state.return_index_repair_task = asyncio.create_task(return_index_repair_worker())


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "return_index_repair_task", None)
    if task:
        task.cancel()
