from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import json
import sys
import time
import uuid
from datetime import datetime, timezone
from .routers.auth import router as auth_router
from .routers.facilities import router as facilities_router
from .routers.inventory import router as inventory_router
from .routers.assets import router as assets_router
from .routers.requisitions import router as requisitions_router
from .routers.dispatches import router as dispatches_router
from .routers.users import router as users_router
from .routers.reports import router as reports_router
from .routers.audit import router as audit_router
from .config import settings
from .db import get_conn, open_pool, close_pool, pool_stats

SERVICE_NAME = "hospital-inventory-backend"
API_PREFIX = "/api"

app = FastAPI(title="Hospital Inventory API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def _error_content(detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.is_dev:
        content["error"] = str(exc)
    return content


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed UUID in a path parameter.
    return JSONResponse(status_code=400, content=_error_content("invalid value", exc))


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("invalid reference", exc))


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=409, content=_error_content("conflict", exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("constraint violation", exc))


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.is_dev and hasattr(exc, "errors"):
        content["errors"] = json.loads(json.dumps(exc.errors(), default=str))
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
    if settings.is_dev:
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
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not path.startswith("/health"):
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


# The web client runs on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router, prefix=API_PREFIX)
app.include_router(facilities_router, prefix=API_PREFIX)
app.include_router(inventory_router, prefix=API_PREFIX)
app.include_router(assets_router, prefix=API_PREFIX)
app.include_router(requisitions_router, prefix=API_PREFIX)
app.include_router(dispatches_router, prefix=API_PREFIX)
app.include_router(users_router, prefix=API_PREFIX)
app.include_router(reports_router, prefix=API_PREFIX)
app.include_router(audit_router, prefix=API_PREFIX)


@app.on_event("startup")
def _startup():
    open_pool()
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        _json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        _json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))
    if settings.jwt_secret == "dev-insecure-jwt-secret" and not settings.is_dev:
        _json_log("warning", "startup.insecure_jwt_secret", env=settings.env)


@app.on_event("shutdown")
def _shutdown():
    close_pool()
    _json_log("info", "shutdown.complete", env=settings.env)


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.is_dev:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


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
    content = {
        "status": "ready" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": request_id,
    }
    if not ok:
        if settings.is_dev:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
        "db_pool": pool_stats(),
    }
