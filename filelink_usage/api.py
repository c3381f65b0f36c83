"""FastAPI admin API for the file link usage tracker.

Endpoints:
    GET    /v1/health                 -- Health check (fast)
    GET    /v1/stats                  -- Match/scan statistics
    GET    /v1/settings               -- Effective runtime settings
    PUT    /v1/settings               -- Override scan frequency / verbose logging
    POST   /v1/scan                   -- Run a scheduled scan pass now
    POST   /v1/rescan                 -- Mark everything stale and scan all owners
    POST   /v1/purge                  -- Drop match rows and scan status
    POST   /v1/owners/reconcile       -- Reconcile one owner (stored, supplied payloads or URIs)
    POST   /v1/owners/delete          -- Owner deleted: drop its usage
    POST   /v1/owners/mark            -- Mark one owner for the next scan
    POST   /v1/files/cataloged        -- New managed file: attach pending usage
    GET    /v1/files/{file_id}/usage  -- Usage records and links for a file
    GET    /metrics                   -- Prometheus exposition

Run: ``python -m filelink_usage.api`` or ``filelink-usage serve``
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, PlainTextResponse

from .config import Config, load_config
from .engine import FileLinkUsageEngine, open_engine
from .interfaces import InvalidOwnerError, ScanPassError
from .metrics import render_prometheus_metrics
from .middleware import APIKeyMiddleware, AuditLogMiddleware
from .reconciler import coerce_owner_id

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_engine: Optional[FileLinkUsageEngine] = None
_config: Optional[Config] = None
_start_time: float = 0.0

logging.getLogger("audit").setLevel(logging.INFO)


def _get_engine() -> FileLinkUsageEngine:
    if _engine is None:
        raise HTTPException(503, "Engine not initialised")
    return _engine


def _owner_id(value: Union[int, str]) -> int:
    oid = coerce_owner_id(value)
    if oid is None:
        raise InvalidOwnerError(f"Malformed owner id: {value!r}")
    return oid


def _attach_audit_log(path: str) -> None:
    try:
        handler = logging.FileHandler(path)
    except OSError as exc:
        logger.warning("Audit log %s not available: %s", path, exc)
        return
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    logging.getLogger("audit").addHandler(handler)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _engine, _config, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    if _config.audit_log:
        _attach_audit_log(_config.audit_log)

    _engine = open_engine(_config)
    _start_time = time.time()

    logger.info(
        "File link usage API ready -- db=%s frequency=%s owner_types=%s",
        _config.db_path,
        _engine.scan_frequency,
        _config.owner_types,
    )

    yield

    # Shutdown
    _engine.close()
    _engine = None


app = FastAPI(
    title="File Link Usage API",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Middleware (order matters: last added = first to run) ---
app.add_middleware(AuditLogMiddleware)

_api_key = os.environ.get("FILELINK_USAGE_API_KEY", "")
if _api_key:
    app.add_middleware(APIKeyMiddleware, api_key=_api_key)
    logger.info("API key authentication enabled")
else:
    logger.warning("No FILELINK_USAGE_API_KEY set -- API is UNAUTHENTICATED")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["X-API-Key", "Content-Type"],
)

# --- Centralized error handling ---

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )

@app.exception_handler(InvalidOwnerError)
async def invalid_owner_handler(request, exc):
    logger.warning("Invalid owner: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=400,
        content={"error": str(exc), "status_code": 400},
    )

@app.exception_handler(ScanPassError)
async def scan_pass_error_handler(request, exc):
    logger.error("Scan pass failed: %s (path=%s)", exc, request.url.path)
    return JSONResponse(status_code=500, content=exc.report.to_dict())

@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class SettingsUpdate(BaseModel):
    scan_frequency: Optional[str] = Field(default=None, description="off, hourly, daily, weekly, monthly or yearly")
    verbose_logging: Optional[bool] = None


class ScanRequest(BaseModel):
    now: Optional[float] = Field(default=None, ge=0, description="Scan time (defaults to the current time)")


class OwnerRef(BaseModel):
    owner_type: str = Field(..., min_length=1, max_length=64)
    owner_id: Union[int, str]


class ReconcileRequest(OwnerRef):
    payloads: Optional[List[Optional[str]]] = Field(
        default=None, description="Text payloads to scan instead of the stored content"
    )
    uris: Optional[List[str]] = Field(
        default=None, description="Explicit file URIs instead of scanning content"
    )


class FileCatalogedRequest(BaseModel):
    file_id: int = Field(..., ge=1)
    uri: str = Field(..., min_length=1, max_length=2048)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    storage_ok = False
    if _engine is not None:
        try:
            _engine.store.count_matches()
            storage_ok = True
        except Exception as exc:
            logger.warning("Health check storage probe failed: %s", exc)
    return {
        "status": "ok" if storage_ok else "degraded",
        "uptime_seconds": round(time.time() - _start_time, 1) if _start_time else 0.0,
        "checks": {"storage": storage_ok},
    }


@app.get("/v1/stats")
async def stats() -> Dict[str, Any]:
    return _get_engine().stats()


@app.get("/v1/settings")
async def get_settings() -> Dict[str, Any]:
    return _get_engine().settings()


@app.put("/v1/settings")
async def put_settings(req: SettingsUpdate) -> Dict[str, Any]:
    try:
        return _get_engine().update_settings(
            scan_frequency=req.scan_frequency,
            verbose_logging=req.verbose_logging,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))


@app.post("/v1/scan")
async def scan(req: Optional[ScanRequest] = None) -> Dict[str, Any]:
    """Run a scheduled pass; owners not yet due are left alone."""
    report = _get_engine().run_scheduled_scan(now=req.now if req else None)
    return report.to_dict()


@app.post("/v1/rescan")
async def rescan(req: Optional[ScanRequest] = None) -> Dict[str, Any]:
    """Mark every owner stale and scan all of them now."""
    report = _get_engine().force_full_rescan(now=req.now if req else None)
    return report.to_dict()


@app.post("/v1/purge")
async def purge() -> Dict[str, Any]:
    """Drop derived state; the next scan rebuilds it from content."""
    _get_engine().purge_derived_state()
    return {"status": "purged"}


@app.post("/v1/owners/reconcile")
async def reconcile_owner(req: ReconcileRequest) -> Dict[str, Any]:
    engine = _get_engine()
    owner_id = _owner_id(req.owner_id)
    if req.payloads is not None:
        result = engine.owner_saved(req.owner_type, owner_id, req.payloads)
    elif req.uris is not None:
        result = engine.manage_usage(req.owner_type, owner_id, req.uris)
    else:
        result = engine.extract_and_reconcile(req.owner_type, owner_id)
    return result.to_dict()


@app.post("/v1/owners/delete")
async def delete_owner(req: OwnerRef) -> Dict[str, Any]:
    result = _get_engine().owner_deleted(req.owner_type, _owner_id(req.owner_id))
    return result.to_dict()


@app.post("/v1/owners/mark")
async def mark_owner(req: OwnerRef) -> Dict[str, Any]:
    owner_id = _owner_id(req.owner_id)
    _get_engine().mark_owner_for_scan(req.owner_type, owner_id)
    return {"owner_type": req.owner_type, "owner_id": owner_id, "marked": True}


@app.post("/v1/files/cataloged")
async def file_cataloged(req: FileCatalogedRequest) -> Dict[str, Any]:
    invalidated = _get_engine().file_cataloged(req.file_id, req.uri)
    return {"file_id": req.file_id, "invalidated": sorted(invalidated)}


@app.get("/v1/files/{file_id}/usage")
async def file_usage(file_id: int) -> Dict[str, Any]:
    data = _get_engine().usage_for_file(file_id)
    if data["uri"] is None and not data["usage"]:
        raise HTTPException(404, f"Unknown file {file_id}")
    return data


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    """Prometheus exposition of scan, usage and request counters."""
    return PlainTextResponse(
        render_prometheus_metrics(),
        media_type="text/plain; version=0.0.4",
    )


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting File Link Usage API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "filelink_usage.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
