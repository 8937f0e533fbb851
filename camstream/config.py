"""Configuration management for the capture service.

Uses Pydantic Settings for environment variable and .env file support.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from camstream.models.camera import DEFAULT_CAMERAS, CameraInfo
from camstream.models.session import DEFAULT_BITRATE, DEFAULT_RESOLUTION


class CaptureSettings(BaseSettings):
    """Frame source and still capture settings."""

    model_config = SettingsConfigDict(env_prefix="CAMSTREAM_CAPTURE_")

    width: int = Field(default=1920, description="Requested frame width")
    height: int = Field(default=1080, description="Requested frame height")
    frame_rate: int = Field(default=30, description="Requested frames per second")
    audio: bool = Field(
        default=True,
        description="Request audio (ignored by the video-only OpenCV backend)"
    )
    still_quality: float = Field(
        default=0.9,
        description="JPEG quality for still captures (0-1)"
    )
    open_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for opening network sources"
    )


class RecordingSettings(BaseSettings):
    """Recording session settings."""

    model_config = SettingsConfigDict(env_prefix="CAMSTREAM_RECORDING_")

    default_path: Path = Field(
        default=Path("./uploads/recordings"),
        description="Directory used when a start request names none"
    )
    grace_period_seconds: float = Field(
        default=5.0,
        description="Seconds a stopped recording stays queryable"
    )
    write_drain_timeout_seconds: float = Field(
        default=10.0,
        description="Seconds a stop waits for chunk writes already in flight"
    )
    chunk_extension: str = Field(
        default=".webm",
        description="File extension for chunk and artifact files"
    )
    upload_endpoint: str = Field(
        default="/api/camera/upload-recording-chunk",
        description="Endpoint clients upload chunks to"
    )
    default_resolution: str = Field(
        default=DEFAULT_RESOLUTION,
        description="Resolution used when a start request names none"
    )
    default_bitrate: int = Field(
        default=DEFAULT_BITRATE,
        description="Bitrate used when a start request names none"
    )


class StreamingSettings(BaseSettings):
    """Live streaming settings."""

    model_config = SettingsConfigDict(env_prefix="CAMSTREAM_STREAMING_")

    grace_period_seconds: float = Field(
        default=1.0,
        description="Seconds a stopped stream stays queryable"
    )
    refresh_rate_hz: float = Field(
        default=60.0,
        description="Display refresh cadence of the primary relay loop"
    )
    fallback_interval_seconds: float = Field(
        default=0.1,
        description="Upload period of the fallback transport"
    )
    frame_quality: float = Field(
        default=0.8,
        description="JPEG quality for streamed frames (0-1)"
    )
    push_url_template: str = Field(
        default="ws://localhost:8080/api/camera/stream/{stream_id}",
        description="Primary push channel target"
    )
    fallback_url: str = Field(
        default="http://localhost:8080/api/camera/stream-chunk",
        description="Fallback chunk upload target"
    )
    http_endpoint: str = Field(
        default="/api/camera/stream-chunk",
        description="Chunk endpoint advertised to clients"
    )
    connect_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for establishing either transport"
    )


class StorageSettings(BaseSettings):
    """Still image storage settings."""

    model_config = SettingsConfigDict(env_prefix="CAMSTREAM_STORAGE_")

    screenshot_path: Path = Field(
        default=Path("./uploads/screenshots"),
        description="Directory used for screenshots when none is given"
    )
    max_upload_bytes: int = Field(
        default=50 * 1024 * 1024,
        description="Largest accepted upload"
    )


class ServerSettings(BaseSettings):
    """FastAPI server settings."""

    model_config = SettingsConfigDict(env_prefix="CAMSTREAM_SERVER_")

    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=8080, description="Port to listen on")
    log_level: str = Field(default="INFO", description="Logging level")


class Settings(BaseSettings):
    """Root settings for the capture service.

    Settings are loaded from environment variables with CAMSTREAM_ prefix,
    or from a .env file in the working directory.

    Example environment variables:
        CAMSTREAM_SERVER_PORT=8080
        CAMSTREAM_RECORDING_GRACE_PERIOD_SECONDS=5
        CAMSTREAM_STREAMING_FALLBACK_URL=http://viewer:8080/api/camera/stream-chunk
    """

    model_config = SettingsConfigDict(
        env_prefix="CAMSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    recording: RecordingSettings = Field(default_factory=RecordingSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    cameras: List[Dict[str, Any]] = Field(
        default_factory=lambda: [dict(camera) for camera in DEFAULT_CAMERAS],
        description="Camera catalog (JSON list in CAMSTREAM_CAMERAS)"
    )
    default_camera_id: str = Field(
        default="camera1",
        description="Camera used when a request names none"
    )

    def camera_catalog(self) -> List[CameraInfo]:
        """Cameras known to the registry."""
        return [CameraInfo.from_dict(entry) for entry in self.cameras]


# Global settings instance (lazy loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
