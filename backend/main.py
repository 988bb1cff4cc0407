# main.py — WorkHub API
# Features:
# - Request correlation IDs
# - Security headers
# - Domain errors mapped to HTTP status codes in one place
# - WebSocket delivery of committed domain events
# - Health check with DB verification

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import init_db, close_db, async_session_maker
from dependencies import build_services
from errors import DomainError, ValidationFailure
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("workhub")

VERSION = "1.0.0"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 characters; bearer tokens will not verify")

    if os.getenv("DATABASE_URL", "").startswith("sqlite"):
        warnings.append("Running on SQLite: writers are serialized, use PostgreSQL for concurrent load")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting WorkHub v{VERSION}...")
    await init_db()
    logger.info("Database initialized")
    _check_startup_config()
    # no-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app)
    yield
    logger.info("Shutting down WorkHub...")
    await close_db()


app = FastAPI(
    title="WorkHub",
    description="Multi-tenant workspaces, projects and tasks with role-based access and an audit trail",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Store, fan-out and domain services; tests swap this for one bound to their own database
app.state.services = build_services(async_session_maker)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: request context, timing and security headers
# ============================================================

@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or rid

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers.update(SECURITY_HEADERS)
    response.headers["X-Request-ID"] = rid
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"

    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.3f}s) [rid={rid[:8]}]")
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    content["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return _error_response(request, exc.status_code, jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # same envelope as ValidationFailure; offending inputs are echoed only as text
    failure = ValidationFailure("Request validation failed")
    content = failure.to_dict()
    content["detail"] = [
        {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
            **({"input": repr(err["input"])} if "input" in err else {}),
        }
        for err in exc.errors()
    ]
    return _error_response(request, failure.status_code, content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, {"detail": "Internal server error", "error": "internal_error"})


# ============================================================
# ROUTERS
# ============================================================

from routers import workspaces, projects, tasks, comments, activity, websocket_router

app.include_router(workspaces.router)
app.include_router(workspaces.invitations_router)
app.include_router(projects.router)
app.include_router(tasks.router)
app.include_router(comments.router)
app.include_router(activity.router)
app.include_router(websocket_router.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(request: Request):
    """Health check with database connectivity verification"""
    services = request.app.state.services

    async def _ping(tx):
        await tx.session.execute(text("SELECT 1"))

    try:
        await services.store.read(_ping)
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "realtime": services.fanout.get_stats(),
    }


@app.get("/")
async def root():
    return {
        "name": "WorkHub",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
