"""
FastAPI Application Entry Point
Co-purchase Recommendations - Python Backend
"""
from contextvars import ContextVar
from typing import Callable, Optional
import asyncio
import json
import logging
import os
import sys
import time
import uuid

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from database import check_db_health, engine, get_pool_status, init_db
from routers import copurchase, recommendations, settings as settings_router
from services.errors import CoPurchaseError

load_dotenv()

# Request id of the request being served, for log lines emitted deep in services
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


# ---- Logging (one JSON object per line on stdout) ----
class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if getattr(record, "request_id", None):
            payload["request_id"] = record.request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in ("uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(logging.INFO)
    # INFO here logs every statement
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Co-purchase Recommendations API",
    description="Customers who bought this product also bought...",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)


def _cors_origins() -> list:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["http://localhost:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs it on the way in and out, echoes it back"""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start = time.monotonic()

        client = request.client.host if request.client else "-"
        logger.info(f"REQ {request.method} {request.url.path} qs={request.url.query!s} ip={client}")
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Uncaught exception while serving {request.method} {request.url.path}")
            raise
        finally:
            request_id_var.reset(token)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"RES {request.method} {request.url.path} status={response.status_code} durMs={duration_ms}",
            extra={"request_id": request_id},
        )
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestIDMiddleware)


@app.get("/")
async def root_endpoint():
    return {"ok": True, "service": "copurchase-recommendations"}


@app.get("/healthz")
async def healthz():
    """Liveness probe; does not touch the database."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    db_health = await check_db_health()
    return {
        "status": "healthy" if db_health["status"] == "healthy" else "degraded",
        "database": db_health,
        "timestamp": time.time(),
    }


@app.get("/api/health/pool")
async def api_health_pool():
    return {"pool": await get_pool_status(), "timestamp": time.time()}


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "error": "Validation failed"})


@app.exception_handler(CoPurchaseError)
async def copurchase_exception_handler(request: Request, exc: CoPurchaseError):
    logger.error(f"Co-purchase error: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "details": exc.details})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


app.include_router(recommendations.router, prefix="/api", tags=["recommendations"])
app.include_router(copurchase.router, prefix="/api")
app.include_router(settings_router.router, prefix="/api")


@app.on_event("startup")
async def startup():
    logger.info("Starting Co-purchase Recommendations API...")
    # SQLite databases start empty, so create the tables unless told otherwise
    default_init = "true" if engine.dialect.name == "sqlite" else "false"
    if os.getenv("INIT_DB_ON_STARTUP", default_init).lower() != "true":
        logger.info("Skipping DB init on startup")
        return
    try:
        await asyncio.wait_for(init_db(), timeout=120)
    except asyncio.TimeoutError:
        logger.error("DB init timed out after 120s, continuing without init")
    except Exception as e:
        logger.error(f"DB init failed (continuing to serve): {e}", exc_info=True)


@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Co-purchase Recommendations API...")
    await engine.dispose()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production",
    )
