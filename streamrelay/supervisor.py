"""
Stream Relay - FFmpeg worker supervision

One FFmpeg process per destination. Each spawn gets a watcher task that
feeds stderr into telemetry and reacts to the process exiting:

    absent --start--> running --exit / stop--> absent

Workers are never force-killed and a crashed worker is not respawned; the
operator starts it again.
"""
import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from streamrelay.errors import WorkerAlreadyRunningError
from streamrelay.models import Destination
from streamrelay.plan import EncodingPlan
from streamrelay.telemetry import TelemetryCollector, is_progress_line, split_output_lines

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
LOG_LINE_LIMIT = 200


@dataclass
class WorkerHandle:
    """A running FFmpeg process relaying to one destination."""
    destination_id: str
    name: str
    process: asyncio.subprocess.Process
    output_url: str
    plan: EncodingPlan
    started_at: datetime = field(default_factory=datetime.now)
    watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class WorkerSupervisor:
    """Owns the set of running workers; nothing else touches the handles."""

    def __init__(
        self,
        telemetry: TelemetryCollector,
        ffmpeg_path: str = "ffmpeg",
        grace_period: float = 0.5,
        log_output: bool = True,
    ):
        self.telemetry = telemetry
        self.ffmpeg_path = ffmpeg_path
        self.grace_period = grace_period
        self.log_output = log_output
        self.relay_started_at: Optional[datetime] = None
        self._handles: dict[str, WorkerHandle] = {}
        self._watchers: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return bool(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, destination_id: str) -> bool:
        return destination_id in self._handles

    def get(self, destination_id: str) -> Optional[WorkerHandle]:
        return self._handles.get(destination_id)

    def handles(self) -> list[WorkerHandle]:
        return list(self._handles.values())

    def mark_relay_started(self) -> None:
        """Reset the relay-wide start time to now."""
        self.relay_started_at = datetime.now()

    async def start_one(self, destination: Destination, plan: EncodingPlan) -> Optional[WorkerHandle]:
        """Spawn FFmpeg for a destination.

        Returns None when the process could not be started; the destination
        then stays absent.
        """
        if destination.id in self._handles:
            raise WorkerAlreadyRunningError(destination.id)

        cmd = plan.command(self.ffmpeg_path)
        logger.info(f"Starting relay to {destination.name}: {' '.join(cmd)[:100]}...")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[{destination.name}] FFmpeg failed to start: {e}")
            return None

        # Another start for the same id may have completed while we spawned
        if destination.id in self._handles:
            process.terminate()
            self._track(asyncio.create_task(process.communicate()))
            raise WorkerAlreadyRunningError(destination.id)

        handle = WorkerHandle(
            destination_id=destination.id,
            name=destination.name,
            process=process,
            output_url=destination.url,
            plan=plan,
        )
        self._handles[destination.id] = handle
        self.telemetry.register(destination.id, destination.name)
        if self.relay_started_at is None:
            self.relay_started_at = datetime.now()

        handle.watcher = asyncio.create_task(self._watch(handle))
        self._track(handle.watcher)
        return handle

    def _track(self, task: asyncio.Task) -> None:
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    def stop_one(self, destination_id: str) -> bool:
        """Send SIGTERM to a destination's worker. False if none is running."""
        handle = self._handles.pop(destination_id, None)
        if handle is None:
            return False

        logger.info(f"Stopping relay to {handle.name}")
        self._terminate(handle)
        if not self._handles:
            self.relay_started_at = None
        return True

    def stop_all(self) -> None:
        for handle in list(self._handles.values()):
            logger.info(f"Stopping relay to {handle.name}")
            self._terminate(handle)
        self._handles.clear()
        self.relay_started_at = None

    async def restart_one(self, destination: Destination, plan: EncodingPlan) -> Optional[WorkerHandle]:
        """Stop then start a destination's worker.

        Not atomic: the fixed grace period is a heuristic for the old process
        to release its output connection, nothing confirms it actually did.
        """
        if self.stop_one(destination.id):
            logger.info(f"Restarting relay to {destination.name}")
            await asyncio.sleep(self.grace_period)
        return await self.start_one(destination, plan)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every worker and wait for the processes to exit."""
        self.stop_all()
        pending = [task for task in self._watchers if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning(f"{len(still_running)} worker(s) still running after {timeout}s")

    def _terminate(self, handle: WorkerHandle) -> None:
        if handle.process.returncode is None:
            try:
                handle.process.terminate()
            except ProcessLookupError:
                pass

    async def _watch(self, handle: WorkerHandle) -> None:
        try:
            await self._pump_output(handle)
        except Exception as e:
            logger.exception(f"[{handle.name}] Error reading FFmpeg output: {e}")
        code = await handle.process.wait()
        self._on_exit(handle, code)

    async def _pump_output(self, handle: WorkerHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return

        # Multi-byte characters can straddle two reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                buffer += decoder.decode(b"", final=True)
                break
            buffer += decoder.decode(chunk)
            lines, buffer = split_output_lines(buffer)
            for line in lines:
                self._on_output(handle, line)

        if buffer.strip():
            self._on_output(handle, buffer)

    def _on_output(self, handle: WorkerHandle, line: str) -> None:
        line = line.strip()
        # Output of a replaced or stopped worker is dropped
        if self._handles.get(handle.destination_id) is handle:
            self.telemetry.ingest(handle.destination_id, line)
        if self.log_output and not is_progress_line(line):
            logger.info(f"[{handle.name}] {line[:LOG_LINE_LIMIT]}")

    def _on_exit(self, handle: WorkerHandle, code: int) -> None:
        if code == 0:
            logger.info(f"[{handle.name}] FFmpeg exited with code {code}")
        else:
            logger.warning(f"[{handle.name}] FFmpeg exited with code {code}")

        current = self._handles.get(handle.destination_id)
        if current is handle:
            del self._handles[handle.destination_id]
        # A newer worker owns the series now
        if current is None or current is handle:
            self.telemetry.mark_ended(handle.destination_id)

        if not self._handles:
            self.relay_started_at = None
