"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from pagesnap.auth import AuthContext, get_auth_context, get_store
from pagesnap.errors import CaptureError, normalize_error_message
from pagesnap.jobs import JobManager
from pagesnap.presets import PRESETS, grouped_presets
from pagesnap.schemas import CaptureRequest, ErrorDetail, ErrorResponse, JobStatus
from pagesnap.settings import settings

LOGGER = logging.getLogger(__name__)

SERVICE_NAME = "pagesnap"
SERVICE_VERSION = "1.0.0"
_PROMETHEUS_EXPORTER_STARTED = False
_STARTED_AT = time.monotonic()
_HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "ACCESS_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


async def _start_prometheus_exporter() -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED:
        return
    port = settings.telemetry.prometheus_port
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    await _start_prometheus_exporter()
    JOB_MANAGER.start_watchdog()
    yield
    await JOB_MANAGER.shutdown()


app = FastAPI(title="pagesnap", version=SERVICE_VERSION, lifespan=_lifespan)
settings.storage.uploads_dir.mkdir(parents=True, exist_ok=True)
app.mount(
    settings.storage.public_uploads_path,
    StaticFiles(directory=settings.storage.uploads_dir),
    name="uploads",
)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")

JOB_MANAGER = JobManager(store=get_store())


def _success(data: Any, message: str = "Success") -> dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _error(status_code: int, message: str, code: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(message=message, code=code)).model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


@app.exception_handler(CaptureError)
async def _capture_error_handler(_: Request, exc: CaptureError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("Request failed: %s", exc)
    return _error(exc.status_code, normalize_error_message(exc, debug=settings.debug), exc.code)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return _error(status.HTTP_400_BAD_REQUEST, message, "VALIDATION_ERROR")


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return _error(exc.status_code, str(exc.detail), code, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def _unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error")
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        normalize_error_message(exc, debug=settings.debug),
        "INTERNAL_ERROR",
    )


@app.get("/health", tags=["health"])
async def healthcheck() -> dict[str, Any]:
    """Return a simple status useful for smoke tests."""

    return {
        "status": "ok",
        "browser_connected": await JOB_MANAGER.renderer.health_check(),
        "cloud_storage": JOB_MANAGER.storage.enabled,
    }


@app.post("/capture/url", status_code=status.HTTP_201_CREATED)
async def create_capture_job(
    request: CaptureRequest,
    auth: AuthContext = Depends(get_auth_context),
) -> dict[str, Any]:
    job = await JOB_MANAGER.create_job(auth.owner_id, request)
    return _success(job.model_dump(mode="json"), "Capture job created")


@app.get("/capture/jobs")
async def list_capture_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: JobStatus | None = Query(None, alias="status"),
    auth: AuthContext = Depends(get_auth_context),
) -> dict[str, Any]:
    listing = await JOB_MANAGER.list_jobs(auth.owner_id, page=page, limit=limit, status=status_filter)
    return _success(listing.model_dump(mode="json"), "Jobs retrieved successfully")


@app.get("/capture/jobs/{job_id}")
async def fetch_capture_job(job_id: str, auth: AuthContext = Depends(get_auth_context)) -> dict[str, Any]:
    job = await JOB_MANAGER.get_job(job_id, owner_id=auth.owner_id)
    return _success(job.model_dump(mode="json"), "Job retrieved successfully")


@app.post("/capture/jobs/{job_id}/process")
async def process_capture_job(job_id: str, auth: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    outcome = await JOB_MANAGER.process_job(job_id, owner_id=auth.owner_id)
    payload = outcome.model_dump(mode="json")
    if outcome.success:
        return JSONResponse(_success(payload, "Capture completed"))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error=ErrorDetail(message=outcome.error or "Capture failed", code="CAPTURE_FAILED"),
            data=payload,
        ).model_dump(mode="json"),
    )


@app.get("/capture/jobs/{job_id}/events")
async def capture_job_events(
    job_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
) -> StreamingResponse:
    job = await JOB_MANAGER.get_job(job_id, owner_id=auth.owner_id)
    queue = JOB_MANAGER.subscribe(job_id)
    backlog = JOB_MANAGER.get_events(job_id)

    async def event_generator() -> AsyncIterator[str]:
        last_sequence = backlog[-1]["sequence"] if backlog else -1
        try:
            if not backlog:
                yield json.dumps({"job_id": job_id, "status": job.status.value, "sequence": -1}) + "\n"
            for entry in backlog:
                yield json.dumps(entry) + "\n"
            if job.status.is_terminal and not JOB_MANAGER.is_running(job_id):
                return
            while True:
                try:
                    entry = await asyncio.wait_for(queue.get(), timeout=5)
                except asyncio.TimeoutError:
                    yield json.dumps({"event": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()}) + "\n"
                    if await request.is_disconnected():
                        break
                    continue
                if entry["sequence"] <= last_sequence:
                    continue
                last_sequence = entry["sequence"]
                yield json.dumps(entry) + "\n"
                if JobStatus(entry["status"]).is_terminal or await request.is_disconnected():
                    break
        finally:
            JOB_MANAGER.unsubscribe(job_id, queue)

    return StreamingResponse(event_generator(), media_type="application/x-ndjson")


@app.delete("/capture/jobs/{job_id}")
async def delete_capture_job(job_id: str, auth: AuthContext = Depends(get_auth_context)) -> dict[str, Any]:
    await JOB_MANAGER.delete_job(job_id, owner_id=auth.owner_id)
    return _success({"job_id": job_id}, "Capture job deleted successfully")


@app.get("/capture/analytics")
async def capture_analytics(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    auth: AuthContext = Depends(get_auth_context),
) -> dict[str, Any]:
    summary = await JOB_MANAGER.usage_analytics(auth.owner_id, start_date=start_date, end_date=end_date)
    return _success(summary.model_dump(mode="json"), "Usage analytics retrieved")


@app.get("/public/presets")
async def list_presets() -> dict[str, Any]:
    return _success(
        {"presets": grouped_presets(), "total": len(PRESETS)},
        "Resolution presets retrieved",
    )


@app.post("/public/capture")
async def public_capture(request: CaptureRequest, http_request: Request) -> dict[str, Any]:
    started = time.perf_counter()
    artifact = await JOB_MANAGER.capture_direct(request)
    base_url = str(http_request.base_url).rstrip("/")
    options = request.options
    payload: dict[str, Any] = {
        "success": True,
        "url": request.url,
        "screenshot": {
            "filename": artifact.file_name,
            "url": f"{base_url}{artifact.local_url}" if artifact.local_url else artifact.url,
            "format": artifact.format.value,
            "dimensions": {"width": artifact.width, "height": artifact.height},
            "file_size": artifact.byte_size,
            "original_size": artifact.original_byte_size,
            "optimized": artifact.optimized,
        },
        "options": options.model_dump(mode="json"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "processing_time_ms": int((time.perf_counter() - started) * 1000),
    }
    if options.preset:
        payload["preset"] = PRESETS[options.preset].to_dict()
    return payload


@app.get("/public/status")
async def service_status() -> dict[str, Any]:
    return _success(
        {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "features": [
                "Headless Chromium rendering",
                "Rendering-completion heuristic for JavaScript frameworks",
                f"{len(PRESETS)} resolution presets",
                "PNG, JPEG and WebP output",
                "Image optimization",
                "Optional S3 hand-off",
            ],
            "uptime_seconds": round(time.monotonic() - _STARTED_AT, 1),
        },
        "Service status",
    )
