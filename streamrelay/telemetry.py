"""
Stream Relay - FFmpeg progress telemetry

FFmpeg's -stats output is a stream of lines such as:

    frame= 1234 fps= 60 q=28.0 size=   12345kB time=00:00:41.23 bitrate=2468.5kbits/s speed=1.00x

Each line is parsed into a TelemetrySample and kept in a bounded series per
destination. Series outlive their worker so the dashboard can still chart a
stream after it ended.
"""
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from streamrelay.models import now_ms

logger = logging.getLogger(__name__)

MAX_STATS_HISTORY = 3600  # one hour at one sample per second
DEFAULT_MAX_POINTS = 300  # five minutes

_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_TIME_RE = re.compile(r"time=(\d+):(\d+):([\d.]+)")
_LINE_BREAK_RE = re.compile(r"[\r\n]")


@dataclass
class TelemetrySample:
    """One progress reading from a worker."""
    timestamp: int = 0
    bitrate: Optional[float] = None  # kbit/s
    fps: Optional[float] = None
    speed: Optional[float] = None
    frame: Optional[int] = None
    time: Optional[float] = None  # media seconds

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class TelemetrySeries:
    """Samples for one destination plus its lifecycle markers."""
    platform_name: Optional[str] = None
    history: deque = field(default_factory=lambda: deque(maxlen=MAX_STATS_HISTORY))
    current: Optional[TelemetrySample] = None
    started_at: Optional[int] = None
    ended: bool = False
    end_time: Optional[int] = None

    def query(self, since: Optional[int] = None, max_points: int = DEFAULT_MAX_POINTS) -> list[TelemetrySample]:
        """Samples newer than ``since``, keeping the most recent ``max_points``."""
        samples = list(self.history)
        if since:
            samples = [s for s in samples if s.timestamp > since]
        if max_points is not None and len(samples) > max_points:
            samples = samples[-max_points:]
        return samples


def parse_progress_line(line: str) -> Optional[TelemetrySample]:
    """Extract whichever progress fields are present in a line.

    Returns None when the line carries none of them.
    """
    sample = TelemetrySample()
    found = False

    match = _BITRATE_RE.search(line)
    if match:
        sample.bitrate = float(match.group(1))
        found = True

    match = _FPS_RE.search(line)
    if match:
        sample.fps = float(match.group(1))
        found = True

    match = _SPEED_RE.search(line)
    if match:
        sample.speed = float(match.group(1))
        found = True

    match = _FRAME_RE.search(line)
    if match:
        sample.frame = int(match.group(1))
        found = True

    match = _TIME_RE.search(line)
    if match:
        hours, minutes, seconds = match.groups()
        sample.time = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        found = True

    return sample if found else None


def split_output_lines(buffer: str) -> tuple[list[str], str]:
    """Split buffered stderr text into complete lines and the unfinished tail.

    FFmpeg ends progress lines with a carriage return, everything else with
    a newline; both terminate a line here.
    """
    parts = _LINE_BREAK_RE.split(buffer)
    return [p for p in parts[:-1] if p.strip()], parts[-1]


def is_progress_line(line: str) -> bool:
    return "frame=" in line or "bitrate=" in line


class TelemetryCollector:
    """Keeps a TelemetrySeries per destination id."""

    def __init__(
        self,
        history_size: int = MAX_STATS_HISTORY,
        clock: Callable[[], int] = now_ms,
    ):
        self.history_size = history_size
        self._clock = clock
        self._series: dict[str, TelemetrySeries] = {}

    def _get_or_create(self, destination_id: str) -> TelemetrySeries:
        series = self._series.get(destination_id)
        if series is None:
            series = TelemetrySeries(
                history=deque(maxlen=self.history_size),
                started_at=self._clock(),
            )
            self._series[destination_id] = series
        return series

    def register(self, destination_id: str, platform_name: str) -> TelemetrySeries:
        """Attach a new worker to the destination's series.

        Existing history is kept; the ended marker is reset.
        """
        series = self._get_or_create(destination_id)
        series.platform_name = platform_name
        series.ended = False
        series.end_time = None
        return series

    def ingest(self, destination_id: str, raw: str) -> Optional[TelemetrySample]:
        """Parse one line of worker output into the destination's series."""
        sample = parse_progress_line(raw)
        if sample is None:
            return None

        sample.timestamp = self._clock()
        series = self._get_or_create(destination_id)
        series.current = sample

        # Partial output without a bitrate is not charted
        if sample.bitrate is not None:
            series.history.append(sample)
        return sample

    def mark_ended(self, destination_id: str) -> None:
        series = self._series.get(destination_id)
        if series is not None:
            series.ended = True
            series.end_time = self._clock()

    def get(self, destination_id: str) -> Optional[TelemetrySeries]:
        return self._series.get(destination_id)

    def sample(self, destination_id: str) -> Optional[TelemetrySample]:
        series = self._series.get(destination_id)
        return series.current if series else None

    def series(
        self,
        destination_id: str,
        since: Optional[int] = None,
        max_points: int = DEFAULT_MAX_POINTS,
    ) -> list[TelemetrySample]:
        series = self._series.get(destination_id)
        if series is None:
            return []
        return series.query(since, max_points)

    def snapshot(
        self,
        destination_id: str,
        since: Optional[int] = None,
        max_points: int = DEFAULT_MAX_POINTS,
    ) -> Optional[dict]:
        """JSON-ready view of one series."""
        series = self._series.get(destination_id)
        if series is None:
            return None
        return {
            "platformName": series.platform_name,
            "current": series.current.to_dict() if series.current else None,
            "history": [s.to_dict() for s in series.query(since, max_points)],
            "startedAt": series.started_at,
            "ended": series.ended,
            "endTime": series.end_time,
        }

    def snapshot_all(self, since: Optional[int] = None, max_points: int = DEFAULT_MAX_POINTS) -> dict:
        return {
            destination_id: self.snapshot(destination_id, since, max_points)
            for destination_id in self._series
        }

    def clear(self, destination_id: str) -> bool:
        return self._series.pop(destination_id, None) is not None

    def clear_all(self) -> None:
        self._series.clear()
        logger.debug("Telemetry cleared")
