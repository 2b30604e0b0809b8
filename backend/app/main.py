from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import psycopg
import json
import sys
import time
import uuid
from datetime import datetime, timezone
from .routers.inventory import router as inventory_router
from .routers.sales import router as sales_router
from .routers.manufacturing import router as manufacturing_router
from .routers.retail import router as retail_router
from .config import settings
from .db import get_conn, close_pools

app = FastAPI(title="Warehouse Costing API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)
SERVICE_NAME = "warehouse-costing"


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


# Map common DB errors to 4xx/503 so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    content = {"detail": "invalid value"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(psycopg.OperationalError)
def _db_unavailable(req: Request, exc: Exception):
    rid = _current_request_id(req)
    _json_log("error", "http.request.error", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    content = {"detail": "database unavailable, retry later", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=503, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    _json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)

# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        _json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        _json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

# Dev CORS: the warehouse UI runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(inventory_router)
app.include_router(sales_router)
app.include_router(manufacturing_router)
app.include_router(retail_router)

@app.on_event("startup")
def _startup():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        _json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        _json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))

@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.get("/")
def root():
    return {"status": "ok", "service": "api"}


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "db": "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ok",
        "env": settings.env,
        "db": "ok",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "db": "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "request_id": request_id,
        }
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ready",
        "env": settings.env,
        "db": "ok",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": request_id,
    }


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
