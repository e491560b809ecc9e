"""
Stream Relay - NVENC availability probe

Listing encoders is not enough (FFmpeg builds ship h264_nvenc without a GPU),
so the probe runs a tiny synthetic encode and looks at how it fails.
"""
import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# stderr fragments FFmpeg prints when the driver or CUDA libraries are missing
NVENC_FAILURE_MARKERS = ("Cannot load", "No NVENC capable", "CUDA")

PROBE_ARGS = [
    "-hide_banner",
    "-f", "lavfi",
    "-i", "nullsrc=s=256x256:d=0.1",
    "-c:v", "h264_nvenc",
    "-f", "null",
    "-",
]


class CapabilityProber:
    """Probes once whether the NVENC encoder works on this host."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 10.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self._available: Optional[bool] = None
        self._lock = asyncio.Lock()

    @property
    def available(self) -> Optional[bool]:
        """Cached result, None until the first probe finished."""
        return self._available

    async def probe(self) -> bool:
        """Return whether NVENC is usable, probing on the first call only."""
        if self._available is not None:
            return self._available

        async with self._lock:
            if self._available is None:
                self._available = await self._run_probe()
                logger.info(
                    f"NVENC hardware encoder: "
                    f"{'available' if self._available else 'not available (no GPU)'}"
                )
        return self._available

    async def _run_probe(self) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path, *PROBE_ARGS,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(f"NVENC probe could not start {self.ffmpeg_path}: {e}")
            return False

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"NVENC probe timed out after {self.timeout}s, assuming no GPU")
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            return False

        output = stderr.decode("utf-8", errors="ignore")
        has_error = any(marker in output for marker in NVENC_FAILURE_MARKERS)
        return proc.returncode == 0 and not has_error
