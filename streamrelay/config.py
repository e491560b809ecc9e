"""
Stream Relay - Configuration
"""
from pathlib import Path
from typing import Optional, Literal
from pydantic import Field
from pydantic_settings import BaseSettings


class ConfigurationError(Exception):
    """Raised when required settings are missing at startup."""


class RelaySettings(BaseSettings):
    """Configuration for the relay service."""

    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=3001, description="Port to listen on")

    # Authentication / dashboard
    api_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected as a bearer token, also sent to the dashboard"
    )
    dashboard_url: Optional[str] = Field(
        default=None,
        description="Dashboard base URL that serves the destination list"
    )
    destinations_path: str = Field(
        default="/api/vm/platforms",
        description="Path on the dashboard returning enabled destinations"
    )

    # FFmpeg settings
    ffmpeg_path: str = Field(
        default="ffmpeg",
        description="Path to FFmpeg executable"
    )
    log_ffmpeg_output: bool = Field(
        default=True,
        description="Log non-progress FFmpeg stderr lines"
    )

    # Media server (input side)
    media_host: str = Field(
        default="mediamtx",
        description="Host FFmpeg reads the live input from"
    )
    rtmp_port: int = Field(default=1935, description="RTMP port of the media server")
    srt_port: int = Field(default=8890, description="SRT port of the media server")
    stream_path: str = Field(
        default="live/stream",
        description="Path the encoder publishes to (application/stream)"
    )
    input_backend: Literal["mediamtx", "nginx"] = Field(
        default="mediamtx",
        description="Media server flavour used for input status checks"
    )
    input_status_url: str = Field(
        default="http://mediamtx:9997",
        description="Base URL of the media server status API or stat page"
    )

    # Timing
    hw_probe_timeout: float = Field(
        default=10.0,
        description="Seconds before the NVENC probe is killed and treated as unavailable"
    )
    restart_grace_period: float = Field(
        default=0.5,
        description="Seconds to wait between stopping and respawning a worker"
    )
    http_timeout: float = Field(
        default=10.0,
        description="Timeout for dashboard and media server requests"
    )
    shutdown_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for workers to exit on shutdown"
    )

    # Telemetry
    stats_history_size: int = Field(
        default=3600,
        description="Samples kept per destination (1 hour at one per second)"
    )
    stats_default_limit: int = Field(
        default=300,
        description="Default number of samples returned by stats queries"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_dir: Path = Field(
        default=Path("./logs"),
        description="Directory for relay logs"
    )

    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    class Config:
        env_prefix = "RELAY_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    def get_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def ensure_required(self) -> None:
        """Raise ConfigurationError if a required setting is missing."""
        missing = []
        if not self.api_secret:
            missing.append("RELAY_API_SECRET")
        if not self.dashboard_url:
            missing.append("RELAY_DASHBOARD_URL")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


# Global settings instance
settings = RelaySettings()


def init_directories():
    """Create the log directory."""
    settings.log_dir = settings.log_dir.resolve()
    settings.log_dir.mkdir(parents=True, exist_ok=True)
