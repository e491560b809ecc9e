"""
Stream Relay - FastAPI Service

Receives control requests from the dashboard and relays the live input to
every configured destination with one FFmpeg process each.
"""
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from streamrelay import __version__
from streamrelay.capability import CapabilityProber
from streamrelay.config import ConfigurationError, init_directories, settings
from streamrelay.controller import RelayController
from streamrelay.destinations import DestinationSource
from streamrelay.errors import (
    AlreadyRunningError,
    DestinationNotFoundError,
    DestinationSourceError,
    NoDestinationsError,
    RelayError,
    WorkerSpawnError,
)
from streamrelay.input_detector import InputDetector
from streamrelay.models import now_ms
from streamrelay.supervisor import WorkerSupervisor
from streamrelay.system_stats import get_system_stats
from streamrelay.telemetry import TelemetryCollector

logger = logging.getLogger("stream-relay")

PROCESS_STARTED = time.monotonic()


def configure_logging():
    """Log to stdout and to relay.log in the log directory."""
    init_directories()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(settings.log_dir / "relay.log")
        ]
    )


# ============================================================================
# Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime: float
    relayActive: bool
    streamCount: int
    input: dict
    inputAvailable: bool
    nvencAvailable: bool
    encoder: str
    system: dict


class RelayActionResponse(BaseModel):
    """Result of a start/stop/restart request."""
    success: bool
    message: str
    platformId: Optional[str] = None
    count: Optional[int] = None
    platforms: Optional[list[str]] = None
    failed: Optional[list[str]] = None


# ============================================================================
# Relay wiring
# ============================================================================

def build_controller(client: httpx.AsyncClient) -> RelayController:
    """Assemble the relay engine from settings."""
    telemetry = TelemetryCollector(history_size=settings.stats_history_size)
    supervisor = WorkerSupervisor(
        telemetry,
        ffmpeg_path=settings.ffmpeg_path,
        grace_period=settings.restart_grace_period,
        log_output=settings.log_ffmpeg_output,
    )
    return RelayController(
        source=DestinationSource(
            client,
            settings.dashboard_url,
            settings.api_secret,
            path=settings.destinations_path,
        ),
        detector=InputDetector(
            client,
            settings.input_status_url,
            backend=settings.input_backend,
            stream_path=settings.stream_path,
        ),
        prober=CapabilityProber(settings.ffmpeg_path, timeout=settings.hw_probe_timeout),
        supervisor=supervisor,
        telemetry=telemetry,
        media_host=settings.media_host,
        rtmp_port=settings.rtmp_port,
        srt_port=settings.srt_port,
        stream_path=settings.stream_path,
        grace_period=settings.restart_grace_period,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    configure_logging()
    settings.ensure_required()
    client = httpx.AsyncClient(timeout=settings.http_timeout)
    if getattr(app.state, "controller", None) is None:
        app.state.controller = build_controller(client)
    logger.info(f"Stream Relay listening on {settings.host}:{settings.port}")
    logger.info(f"Dashboard URL: {settings.dashboard_url}")
    logger.info(f"RTMP input: rtmp://{settings.media_host}:{settings.rtmp_port}/{settings.stream_path}")
    logger.info(f"SRT input: srt://{settings.media_host}:{settings.srt_port}?streamid={settings.stream_path}")
    logger.info(f"Input status ({settings.input_backend}): {settings.input_status_url}")

    yield

    # Shutdown: no FFmpeg may outlive the relay
    logger.info("Shutting down, stopping all relays...")
    await app.state.controller.shutdown(settings.shutdown_timeout)
    await client.aclose()
    logger.info("Relay shutdown complete")


# ============================================================================
# Authentication
# ============================================================================

def verify_bearer(authorization: Optional[str] = Header(None)):
    """Require the shared secret as a bearer token."""
    expected = settings.api_secret
    if (
        not expected
        or not authorization
        or not authorization.startswith("Bearer ")
        or authorization[len("Bearer "):] != expected
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_controller(request: Request) -> RelayController:
    return request.app.state.controller


app = FastAPI(
    title="Stream Relay",
    description="Relays one live input to many destinations with FFmpeg",
    version=__version__,
    lifespan=lifespan,
    dependencies=[Depends(verify_bearer)],
    # The generated docs routes would bypass the bearer check
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = {
    DestinationSourceError: 502,
    NoDestinationsError: 400,
    AlreadyRunningError: 400,
    DestinationNotFoundError: 404,
    WorkerSpawnError: 500,
}


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    body = {"detail": str(exc)}
    destination_id = getattr(exc, "destination_id", None)
    if destination_id:
        body["platformId"] = destination_id
    return JSONResponse(status_code=status_code, content=body)


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(controller: RelayController = Depends(get_controller)):
    """Health check endpoint."""
    input_state = await controller.input_status()
    has_nvenc = await controller.hardware_available()
    return HealthResponse(
        status="ok",
        version=__version__,
        uptime=time.monotonic() - PROCESS_STARTED,
        relayActive=controller.supervisor.active,
        streamCount=len(controller.supervisor),
        input=input_state.to_dict(),
        inputAvailable=input_state.available,
        nvencAvailable=has_nvenc,
        encoder="nvenc" if has_nvenc else "cpu",
        system=get_system_stats(),
    )


@app.get("/input/status")
async def input_status(controller: RelayController = Depends(get_controller)):
    """Whether a live input is publishing, and over which protocol."""
    state = await controller.input_status()
    return state.to_dict()


@app.get("/relay/status")
async def relay_status(controller: RelayController = Depends(get_controller)):
    return controller.status()


@app.get("/relay/stats")
async def relay_stats(
    since: Optional[int] = None,
    limit: Optional[int] = None,
    controller: RelayController = Depends(get_controller),
):
    """Bitrate history for every destination seen since the last start."""
    started_at = controller.supervisor.relay_started_at
    return {
        "stats": controller.stats(since, limit or settings.stats_default_limit),
        "streamStartTime": started_at.isoformat() if started_at else None,
        "serverTime": now_ms(),
    }


@app.post("/relay/stats/clear")
async def clear_stats(controller: RelayController = Depends(get_controller)):
    controller.clear_stats()
    return {"success": True, "message": "Stats cleared"}


@app.get("/relay/stats/{platform_id}")
async def relay_stats_for(
    platform_id: str,
    since: Optional[int] = None,
    limit: Optional[int] = None,
    controller: RelayController = Depends(get_controller),
):
    data = controller.stats_for(platform_id, since, limit or settings.stats_default_limit)
    if data is None:
        raise HTTPException(status_code=404, detail="Platform not found or no stats available")

    started_at = controller.supervisor.relay_started_at
    return {
        "platformId": platform_id,
        **data,
        "streamStartTime": started_at.isoformat() if started_at else None,
        "serverTime": now_ms(),
    }


@app.delete("/relay/stats/{platform_id}")
async def clear_stats_for(platform_id: str, controller: RelayController = Depends(get_controller)):
    if not controller.clear_stats(platform_id):
        raise HTTPException(status_code=404, detail="Platform not found or no stats available")
    return {"success": True, "message": f"Stats cleared for {platform_id}", "platformId": platform_id}


@app.post("/relay/start", response_model=RelayActionResponse)
async def start_relay(controller: RelayController = Depends(get_controller)):
    """Fetch enabled destinations from the dashboard and start one FFmpeg each."""
    report = await controller.start_all()
    return RelayActionResponse(
        success=report.count > 0,
        message="Relay started" if report.count else "No relay could be started",
        count=report.count,
        platforms=report.started,
        failed=report.failed or None,
    )


@app.post("/relay/stop", response_model=RelayActionResponse)
async def stop_relay(controller: RelayController = Depends(get_controller)):
    controller.stop_all()
    return RelayActionResponse(success=True, message="Relay stopped")


@app.post("/relay/refresh", response_model=RelayActionResponse)
async def refresh_relay(controller: RelayController = Depends(get_controller)):
    """Stop everything and start again with the dashboard's current settings."""
    report = await controller.refresh_all()
    return RelayActionResponse(
        success=report.count > 0,
        message="Relay refreshed",
        count=report.count,
        platforms=report.started,
        failed=report.failed or None,
    )


@app.post("/relay/start/{platform_id}", response_model=RelayActionResponse)
async def start_platform(platform_id: str, controller: RelayController = Depends(get_controller)):
    handle = await controller.start_one(platform_id)
    return RelayActionResponse(
        success=True,
        message=f"Started relay to {handle.name}",
        platformId=platform_id,
    )


@app.post("/relay/stop/{platform_id}", response_model=RelayActionResponse)
async def stop_platform(platform_id: str, controller: RelayController = Depends(get_controller)):
    handle = controller.supervisor.get(platform_id)
    if not controller.stop_one(platform_id):
        raise HTTPException(status_code=404, detail="Platform stream not found")
    return RelayActionResponse(
        success=True,
        message=f"Stopped relay to {handle.name}",
        platformId=platform_id,
    )


@app.post("/relay/restart/{platform_id}", response_model=RelayActionResponse)
async def restart_platform(platform_id: str, controller: RelayController = Depends(get_controller)):
    handle = await controller.restart_one(platform_id)
    return RelayActionResponse(
        success=True,
        message=f"Restarted relay to {handle.name}",
        platformId=platform_id,
    )


@app.get("/status")
async def obs_status(controller: RelayController = Depends(get_controller)):
    """OBS-style status summary kept for older dashboards."""
    input_state = await controller.input_status()
    started_at: Optional[datetime] = controller.supervisor.relay_started_at
    active = controller.supervisor.active
    return {
        "mode": "live" if active else "idle",
        "obsConnected": False,
        "isStreaming": active,
        "streamStartTime": started_at.isoformat() if started_at else None,
        "liveInput": input_state.to_dict(),
        "platforms": len(controller.supervisor),
    }


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Run the relay service."""
    import uvicorn

    configure_logging()
    try:
        settings.ensure_required()
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    uvicorn.run(
        "streamrelay.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        http="httptools",  # faster HTTP parsing than h11
        reload=False
    )


if __name__ == "__main__":
    main()
