"""
Stream Relay - Relay controller

Entry point for the HTTP layer. Each start fetches the destination list
fresh, checks which protocol the input arrives on, and hands one plan per
destination to the supervisor.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from streamrelay.capability import CapabilityProber
from streamrelay.destinations import DestinationSource
from streamrelay.errors import (
    AlreadyRunningError,
    DestinationNotFoundError,
    NoDestinationsError,
    WorkerSpawnError,
)
from streamrelay.input_detector import InputDetector, InputProtocol, InputState
from streamrelay.models import Destination
from streamrelay.plan import EncodingPlan, build_plan, output_protocol_for
from streamrelay.supervisor import WorkerHandle, WorkerSupervisor
from streamrelay.telemetry import DEFAULT_MAX_POINTS, TelemetryCollector

logger = logging.getLogger(__name__)


@dataclass
class StartReport:
    """Outcome of a relay-wide start."""
    started: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.started)


class RelayController:
    """Coordinates prober, input detector, supervisor and telemetry."""

    def __init__(
        self,
        source: DestinationSource,
        detector: InputDetector,
        prober: CapabilityProber,
        supervisor: WorkerSupervisor,
        telemetry: TelemetryCollector,
        media_host: str = "mediamtx",
        rtmp_port: int = 1935,
        srt_port: int = 8890,
        stream_path: str = "live/stream",
        grace_period: float = 0.5,
    ):
        self.source = source
        self.detector = detector
        self.prober = prober
        self.supervisor = supervisor
        self.telemetry = telemetry
        self.media_host = media_host
        self.rtmp_port = rtmp_port
        self.srt_port = srt_port
        self.stream_path = stream_path
        self.grace_period = grace_period

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def input_url(self, state: InputState) -> str:
        """FFmpeg input URL for the protocol the input is arriving on."""
        if state.protocol == InputProtocol.SRT:
            return (
                f"srt://{self.media_host}:{self.srt_port}"
                f"?streamid=read:{self.stream_path}&mode=caller"
            )
        return f"rtmp://{self.media_host}:{self.rtmp_port}/{self.stream_path}"

    async def input_status(self) -> InputState:
        return await self.detector.detect()

    async def hardware_available(self) -> bool:
        return await self.prober.probe()

    async def _plan_context(self) -> tuple[str, bool]:
        use_hardware = await self.prober.probe()
        state = await self.detector.detect()
        input_url = self.input_url(state)
        logger.info(
            f"Using {'SRT' if state.protocol == InputProtocol.SRT else 'RTMP'} input, "
            f"encoder: {'NVENC (GPU)' if use_hardware else 'libx264 (CPU)'}"
        )
        return input_url, use_hardware

    async def _find(self, destination_id: str) -> Destination:
        destinations = await self.source.fetch()
        for destination in destinations:
            if destination.id == destination_id:
                return destination
        raise DestinationNotFoundError(destination_id)

    # ------------------------------------------------------------------
    # Relay-wide operations
    # ------------------------------------------------------------------

    async def start_all(self) -> StartReport:
        """Replace whatever is running with one worker per enabled destination."""
        logger.info("Starting relay...")
        await self.prober.probe()
        destinations = await self.source.fetch()
        if not destinations:
            raise NoDestinationsError("No enabled platforms configured")
        logger.info(f"Found {len(destinations)} destination(s) to relay to")

        self.supervisor.stop_all()
        self.telemetry.clear_all()

        input_url, use_hardware = await self._plan_context()
        report = StartReport()
        for destination in destinations:
            plan = build_plan(destination, input_url, use_hardware)
            try:
                handle = await self.supervisor.start_one(destination, plan)
            except AlreadyRunningError:
                # Started concurrently through start_one; leave it running
                report.started.append(destination.name)
                continue
            if handle is None:
                report.failed.append(destination.name)
            else:
                report.started.append(destination.name)

        if report.started:
            self.supervisor.mark_relay_started()
        if report.failed:
            logger.warning(f"Failed to start relay to: {', '.join(report.failed)}")
        return report

    def stop_all(self) -> None:
        logger.info("Stopping relay...")
        self.supervisor.stop_all()

    async def refresh_all(self) -> StartReport:
        """Stop everything and start again with a freshly fetched list."""
        logger.info("Refreshing relay...")
        self.supervisor.stop_all()
        # Heuristic pause, see WorkerSupervisor.restart_one
        await asyncio.sleep(self.grace_period)
        return await self.start_all()

    # ------------------------------------------------------------------
    # Per-destination operations
    # ------------------------------------------------------------------

    async def start_one(self, destination_id: str) -> WorkerHandle:
        if destination_id in self.supervisor:
            raise AlreadyRunningError(destination_id)

        destination = await self._find(destination_id)
        input_url, use_hardware = await self._plan_context()
        plan = build_plan(destination, input_url, use_hardware)
        handle = await self.supervisor.start_one(destination, plan)
        if handle is None:
            raise WorkerSpawnError(destination_id, "FFmpeg could not be started")
        return handle

    def stop_one(self, destination_id: str) -> bool:
        return self.supervisor.stop_one(destination_id)

    async def restart_one(self, destination_id: str) -> WorkerHandle:
        """Restart one destination with its current configuration.

        The list is fetched before anything is stopped, so an unreachable
        dashboard leaves the running worker alone.
        """
        destination = await self._find(destination_id)
        input_url, use_hardware = await self._plan_context()
        plan = build_plan(destination, input_url, use_hardware)
        handle = await self.supervisor.restart_one(destination, plan)
        if handle is None:
            raise WorkerSpawnError(destination_id, "FFmpeg could not be restarted")
        return handle

    def plan_for(self, destination_id: str) -> Optional[EncodingPlan]:
        handle = self.supervisor.get(destination_id)
        return handle.plan if handle else None

    # ------------------------------------------------------------------
    # Status and telemetry
    # ------------------------------------------------------------------

    def status(self) -> dict:
        streams = []
        for handle in self.supervisor.handles():
            current = self.telemetry.sample(handle.destination_id)
            streams.append({
                "id": handle.destination_id,
                "platform": handle.name,
                "rtmpUrl": handle.output_url,
                "protocol": output_protocol_for(handle.output_url).value,
                "encoder": handle.plan.encoder,
                "pid": handle.pid,
                "running": handle.running,
                "startTime": handle.started_at.isoformat(),
                "currentStats": current.to_dict() if current else None,
            })

        started_at = self.supervisor.relay_started_at
        return {
            "active": self.supervisor.active,
            "streams": streams,
            "count": len(streams),
            "startTime": started_at.isoformat() if started_at else None,
        }

    def stats(self, since: Optional[int] = None, limit: int = DEFAULT_MAX_POINTS) -> dict:
        return self.telemetry.snapshot_all(since, limit)

    def stats_for(self, destination_id: str, since: Optional[int] = None, limit: int = DEFAULT_MAX_POINTS) -> Optional[dict]:
        return self.telemetry.snapshot(destination_id, since, limit)

    def clear_stats(self, destination_id: Optional[str] = None) -> bool:
        if destination_id is None:
            self.telemetry.clear_all()
            return True
        return self.telemetry.clear(destination_id)

    async def shutdown(self, timeout: float = 5.0) -> None:
        await self.supervisor.shutdown(timeout)
