import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from handover_sync.api_client import HandoverApiClient
from handover_sync.cache import QueryCache
from handover_sync.config import load_settings
from handover_sync.errors import HttpError, SyncError
from handover_sync.models import SyncRequest, SyncScope
from handover_sync.orchestrator import SyncOrchestrator
from handover_sync.sync_log import DailyLogger, SyncRunRecorder

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()  # Output to console
    ]
)
logger = logging.getLogger(__name__)

_SETTINGS = load_settings()

_API_CLIENT = HandoverApiClient(_SETTINGS.api_url, _SETTINGS.api_key, timeout=_SETTINGS.http_timeout)
_ORCHESTRATOR = SyncOrchestrator(
    _API_CLIENT,
    endpoint=_SETTINGS.sync_endpoint,
    cache=QueryCache(),
    invalidate_keys=_SETTINGS.invalidate_keys,
    status_reset_delay=_SETTINGS.status_reset_seconds,
    interval_ms=_SETTINGS.sync_interval_ms,
    run_on_start=_SETTINGS.run_on_start,
    sweep_units=_SETTINGS.sweep_units,
)

# Initialize sync run logger
_RUN_LOGGER = DailyLogger("handover_sync_runs", "sync_runs_{date}.log", _SETTINGS.log_dir, subfolder="sync_runs")
_ORCHESTRATOR.subscribe(SyncRunRecorder(_RUN_LOGGER))


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _SETTINGS.auto_start:
        _ORCHESTRATOR.start_periodic()
    yield
    await _ORCHESTRATOR.close()


app = FastAPI(title="SBAR Handover Sync", lifespan=lifespan)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_SETTINGS.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _status_payload() -> dict:
    payload = _ORCHESTRATOR.state.to_dict(now=_ORCHESTRATOR.now())
    payload["periodic"] = _ORCHESTRATOR.periodic_active
    payload["paused"] = _ORCHESTRATOR.paused
    return payload


def _parse_sync_request(body: Optional[dict]) -> SyncRequest:
    body = body or {}
    target_ids = body.get("targetIds") or []
    if isinstance(target_ids, str):
        target_ids = [t for t in target_ids.split(",") if t.strip()]
    elif not isinstance(target_ids, list):
        raise ValueError("targetIds must be a list or a comma-separated string")
    scope = body.get("scope")
    if not scope:
        scope = SyncScope.ALL if not target_ids else (SyncScope.SINGLE if len(target_ids) == 1 else SyncScope.MULTIPLE)
    return SyncRequest(
        scope,
        target_ids,
        force_update=bool(body.get("forceUpdate", False)),
        template_id=body.get("templateId"),
    )


def _backend_failure(exc: SyncError) -> HTTPException:
    if isinstance(exc, HttpError) and exc.status_code == status.HTTP_404_NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@app.get("/api/sync/status")
async def sync_status():
    """Current sync state for spinners, badges and the "last sync" label."""
    return _status_payload()


@app.post("/api/sync/trigger")
@limiter.limit("30/minute")
async def trigger_sync(request: Request, body: Optional[dict] = Body(None)):
    """
    Run one sync now.

    Request body (all optional):
    {
        "scope": "all" | "single" | "multiple",
        "targetIds": ["10A02-1"] or "10A02-1,10A02-2",
        "forceUpdate": false,
        "templateId": "<id>"
    }

    Returns {"accepted": false, ...} when a sync was already running; the
    trigger is dropped, not queued.
    """
    try:
        sync_request = _parse_sync_request(body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    accepted = await _ORCHESTRATOR.trigger_sync(sync_request)
    return {"accepted": accepted, "state": _status_payload()}


@app.post("/api/sync/periodic/start")
@limiter.limit("10/minute")
async def start_periodic_sync(request: Request, body: Optional[dict] = Body(None)):
    """Start (or restart) the periodic sync. Body: {"intervalMs": 900000, "runImmediately": false}"""
    body = body or {}
    interval_ms = body.get("intervalMs")
    if interval_ms is not None:
        try:
            interval_ms = int(interval_ms)
        except (TypeError, ValueError):
            interval_ms = 0
        if interval_ms <= 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="intervalMs must be a positive integer")
    run_immediately = body.get("runImmediately")
    _ORCHESTRATOR.start_periodic(interval_ms, None if run_immediately is None else bool(run_immediately))
    return _status_payload()


@app.post("/api/sync/periodic/stop")
async def stop_periodic_sync():
    _ORCHESTRATOR.stop_periodic()
    return _status_payload()


@app.post("/api/sync/pause")
async def pause_sync():
    """Skip periodic syncs (e.g. while no handover screen is open)."""
    _ORCHESTRATOR.pause()
    return _status_payload()


@app.post("/api/sync/resume")
async def resume_sync():
    _ORCHESTRATOR.resume()
    return _status_payload()


@app.post("/api/sync/patient/{leito}")
@limiter.limit("60/minute")
async def sync_patient(request: Request, leito: str):
    """Sync a single bed from the external clinical system."""
    try:
        return await _ORCHESTRATOR.sync_patient(leito)
    except SyncError as exc:
        logger.error(f"Failed to sync patient in bed {leito}: {exc}")
        raise _backend_failure(exc) from exc


@app.post("/api/sync/patients")
@limiter.limit("60/minute")
async def sync_patients(request: Request, body: dict):
    """
    Sync several beds at once.

    Request body:
    {
        "leitos": ["10A02-1", "10A02-2"]
    }
    """
    leitos = body.get("leitos")
    if not isinstance(leitos, list) or not leitos:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="leitos array is required")
    try:
        return await _ORCHESTRATOR.sync_patients([str(leito) for leito in leitos])
    except SyncError as exc:
        logger.error(f"Failed to sync patients {leitos}: {exc}")
        raise _backend_failure(exc) from exc


@app.get("/api/patients")
async def list_patients():
    """Patient census, cached until the next successful sync."""
    try:
        return await _ORCHESTRATOR.get_patients()
    except SyncError as exc:
        raise _backend_failure(exc) from exc
