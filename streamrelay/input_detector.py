"""
Stream Relay - Live input detection

Asks the media server whether something is publishing to the stream path
and over which protocol. Two backends are supported: the MediaMTX control
API and the nginx-rtmp stat page.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx

from streamrelay.models import now_ms

logger = logging.getLogger(__name__)


class InputProtocol(str, Enum):
    RTMP = "rtmp"
    SRT = "srt"


# MediaMTX source.type -> input protocol
SOURCE_TYPES = {
    "rtmpConn": InputProtocol.RTMP,
    "srtConn": InputProtocol.SRT,
}


@dataclass
class InputState:
    """Result of one availability check."""
    available: bool = False
    protocol: Optional[InputProtocol] = None
    since: Optional[int] = None  # epoch ms the current availability run began

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "protocol": self.protocol.value if self.protocol else None,
            "startTime": self.since,
        }


class InputDetector:
    """Polls the media server and tracks when the input became available."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        status_url: str,
        backend: str = "mediamtx",
        stream_path: str = "live/stream",
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.status_url = status_url.rstrip("/")
        self.backend = backend
        self.stream_path = stream_path
        self._clock = clock
        self._since: Optional[int] = None

    @property
    def application(self) -> str:
        return self.stream_path.split("/", 1)[0]

    async def detect(self) -> InputState:
        try:
            if self.backend == "nginx":
                available, protocol = await self._check_nginx()
            else:
                available, protocol = await self._check_mediamtx()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to check input status: {e}")
            available, protocol = False, None

        if not available:
            self._since = None
            return InputState()

        if self._since is None:
            self._since = self._clock()
        return InputState(available=True, protocol=protocol, since=self._since)

    async def _check_mediamtx(self) -> tuple[bool, Optional[InputProtocol]]:
        res = await self.client.get(f"{self.status_url}/v3/paths/list")
        if not res.is_success:
            logger.debug(f"MediaMTX status returned {res.status_code}")
            return False, None

        data = res.json()
        path = next(
            (item for item in data.get("items") or [] if item.get("name") == self.stream_path),
            None,
        )
        if not path or not path.get("ready"):
            return False, None

        source_type = (path.get("source") or {}).get("type")
        # Unknown source types still count as a live input
        return True, SOURCE_TYPES.get(source_type)

    async def _check_nginx(self) -> tuple[bool, Optional[InputProtocol]]:
        res = await self.client.get(f"{self.status_url}/stat")
        if not res.is_success:
            logger.debug(f"nginx stat page returned {res.status_code}")
            return False, None

        if publishing_in_stat_page(res.text, self.application):
            return True, InputProtocol.RTMP
        return False, None


def publishing_in_stat_page(markup: str, application: str) -> bool:
    """Whether the nginx-rtmp stat page shows a publisher under ``application``."""
    marker = f"<name>{application}</name>"
    start = markup.find(marker)
    while start != -1:
        end = markup.find("</application>", start)
        block = markup[start:end] if end != -1 else markup[start:]
        if "<publishing/>" in block:
            return True
        start = markup.find(marker, start + len(marker))
    return False
