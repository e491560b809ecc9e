"""
Stream Relay - Destination models

Records come from the dashboard as camelCase JSON; aliases keep the wire
names while the code uses snake_case.
"""
import time
from typing import Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SrtSettings(BaseModel):
    """SRT delivery parameters for a connect-style destination."""
    latency: Optional[int] = Field(default=None, description="Latency in milliseconds")
    passphrase: Optional[str] = None
    mode: Optional[str] = Field(default=None, description="caller, listener or rendezvous")


class EncodingConfig(BaseModel):
    """Per-destination encoding settings. Zero/empty values fall back to defaults."""
    use_passthrough: bool = Field(default=False, alias="usePassthrough")
    bitrate: Optional[float] = Field(default=None, description="Video bitrate in kbps")
    max_bitrate: Optional[float] = Field(default=None, alias="maxBitrate")
    bufsize: Optional[float] = Field(default=None, description="VBV buffer size in kbps")
    audio_bitrate: Optional[float] = Field(default=None, alias="audioBitrate")
    preset: Optional[str] = None
    framerate: Optional[float] = None
    cbr: Optional[bool] = None
    rc_lookahead: Optional[float] = Field(default=None, alias="rcLookahead")
    keyframe_interval: Optional[float] = Field(
        default=None, alias="keyframeInterval", description="Seconds between keyframes, may be fractional"
    )
    profile: Optional[str] = None
    resolution: Optional[str] = Field(default=None, description="e.g. 1280:720")

    class Config:
        populate_by_name = True


class Destination(BaseModel):
    """An output the relay pushes to."""
    id: str
    name: str
    url: str = Field(alias="rtmpUrl", description="rtmp(s):// base URL or srt:// address")
    stream_key: Optional[str] = Field(default=None, alias="streamKey")
    encoding: Optional[EncodingConfig] = None
    srt_settings: Optional[SrtSettings] = Field(default=None, alias="srtSettings")
    enabled: bool = True

    class Config:
        populate_by_name = True

    @property
    def is_srt(self) -> bool:
        return self.url.startswith("srt://")
