from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import psycopg
import time
import uuid
from datetime import datetime, timezone
from .routers.pos import router as pos_router
from .config import settings
from .connectivity import ProbeConnectivity
from .deps import get_terminal
from .db import close_pools
from .notifications import json_log as _json_log

app = FastAPI(title="POS Terminal API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _debug_content(content: dict, exc: Exception) -> dict:
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


# Map common DB errors to actionable status codes instead of generic 500s.
@app.exception_handler(psycopg.OperationalError)
def _backend_unreachable(_req: Request, exc: Exception):
    return JSONResponse(status_code=503, content=_debug_content({"detail": "backend unreachable"}, exc))


@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. invalid enum cast: 'card'::transaction_type
    return JSONResponse(status_code=400, content=_debug_content({"detail": "invalid value"}, exc))


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_debug_content({"detail": "invalid reference"}, exc))


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=409, content=_debug_content({"detail": "conflict"}, exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_debug_content({"detail": "constraint violation"}, exc))


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
    return JSONResponse(status_code=500, content=_debug_content(content, exc))


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
    # Polled endpoints would drown the log.
    if path not in {"/health", "/pos/status", "/pos/notifications"}:
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


# The cashier UI runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(pos_router)


@app.on_event("startup")
def _startup():
    terminal = get_terminal()
    conn = terminal.connectivity
    if isinstance(conn, ProbeConnectivity):
        conn.start_polling(settings.connectivity_poll_seconds)
    _json_log(
        "info",
        "startup.terminal_ready",
        env=settings.env,
        version=settings.api_version,
        store=settings.local_store_path,
        pending_count=terminal.queue.pending_count,
    )


@app.on_event("shutdown")
def _shutdown():
    terminal = get_terminal()
    conn = terminal.connectivity
    if isinstance(conn, ProbeConnectivity):
        conn.stop_polling()
    terminal.queue.close()
    close_pools()


@app.get("/health")
def health(req: Request):
    terminal = get_terminal()
    online = terminal.connectivity.is_online
    content = {
        # Offline is a supported mode, not an outage: sales keep queueing.
        "status": "ok" if online else "degraded",
        "env": settings.env,
        "backend": "ok" if online else "down",
        "pending_count": terminal.queue.pending_count,
        "service": "pos-terminal",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    conn = terminal.connectivity
    if isinstance(conn, ProbeConnectivity):
        content["latency_ms"] = conn.last_latency_ms
        if settings.env in {"local", "dev"} and conn.last_error:
            content["error"] = conn.last_error
    return content


@app.get("/meta")
def meta():
    return {
        "service": "pos-terminal",
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
