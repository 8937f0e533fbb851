"""Session data models shared by recording and streaming."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple

DEFAULT_RESOLUTION = "1920x1080"
DEFAULT_BITRATE = 2_500_000


class SessionKind(Enum):
    """Kind of tracked session."""

    RECORDING = "recording"
    STREAMING = "streaming"


class SessionStatus(Enum):
    """Session lifecycle states.

    Valid order: ACTIVE -> STOPPING -> COMPLETED -> EXPIRED (on purge).
    """

    ACTIVE = "active"
    STOPPING = "stopping"
    COMPLETED = "completed"
    EXPIRED = "expired"


def format_duration(seconds: int) -> str:
    """Format whole seconds as HH:MM:SS (hours are not wrapped at 24)."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def parse_resolution(resolution: str) -> Tuple[int, int]:
    """Parse a WIDTHxHEIGHT string.

    Raises:
        ValueError: if the string is not two positive integers joined by 'x'
    """
    try:
        width_text, height_text = resolution.lower().split("x", 1)
        width, height = int(width_text), int(height_text)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid resolution: {resolution!r}")
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid resolution: {resolution!r}")
    return width, height


@dataclass
class SessionSettings:
    """Media settings echoed back from a start request."""

    resolution: str = DEFAULT_RESOLUTION
    bitrate: int = DEFAULT_BITRATE

    @property
    def size(self) -> Tuple[int, int]:
        return parse_resolution(self.resolution)

    def to_dict(self) -> Dict[str, Any]:
        return {"resolution": self.resolution, "bitrate": self.bitrate}


@dataclass(frozen=True)
class DurationInfo:
    """Start/end instants and elapsed time of a finished session.

    The formatted string is always derived from ``duration_seconds``.
    """

    start_time: datetime
    end_time: datetime
    duration_seconds: int

    @property
    def duration(self) -> str:
        return format_duration(self.duration_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "duration": self.duration,
            "durationSeconds": self.duration_seconds,
        }


@dataclass
class Session:
    """One recording or streaming session record.

    Records are only mutated by the SessionRegistry while it holds its lock.
    """

    id: str
    kind: SessionKind
    camera_id: str
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = 0.0
    status: SessionStatus = SessionStatus.ACTIVE
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    settings: SessionSettings = field(default_factory=SessionSettings)

    # Recording only
    storage_path: Optional[Path] = None
    sequence_counter: int = 0
    artifact_path: Optional[Path] = None
    # Reserved sequences still being written, and ones whose write failed
    pending_sequences: Set[int] = field(default_factory=set)
    skipped_sequences: Set[int] = field(default_factory=set)
    # Set once the artifact chunk list is fixed; later writes do not count
    writes_sealed: bool = False

    # Monotonic deadline after which the sweep may purge the record
    purge_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.EXPIRED)

    def mark_completed(self, now_monotonic: float) -> None:
        """Stamp end_time and duration. Caller guarantees this runs once."""
        elapsed = max(0.0, now_monotonic - self.started_monotonic)
        self.duration_seconds = int(round(elapsed))
        self.end_time = self.start_time + timedelta(seconds=elapsed)
        self.status = SessionStatus.COMPLETED

    def duration_info(self) -> Optional[DurationInfo]:
        """Duration of a completed session, None while still running."""
        if self.end_time is None or self.duration_seconds is None:
            return None
        return DurationInfo(
            start_time=self.start_time,
            end_time=self.end_time,
            duration_seconds=self.duration_seconds,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "cameraId": self.camera_id,
            "status": self.status.value,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "settings": self.settings.to_dict(),
        }
        if self.kind == SessionKind.RECORDING:
            data["path"] = str(self.storage_path) if self.storage_path else None
            data["chunkCount"] = self.sequence_counter
            data["artifact"] = str(self.artifact_path) if self.artifact_path else None
        return data


@dataclass(frozen=True)
class ChunkReceipt:
    """Outcome of accepting one recording chunk."""

    session_id: str
    sequence: int
    path: Path
    size: int
    is_final: bool
    completed: bool = False
    artifact_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "chunkPath": str(self.path),
            "size": self.size,
            "isCompleted": self.completed,
            "artifact": str(self.artifact_path) if self.artifact_path else None,
        }


@dataclass(frozen=True)
class StreamChunkReceipt:
    """Outcome of accepting one fallback stream chunk."""

    stream_id: str
    timestamp: Optional[str]
    size: int
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streamId": self.stream_id,
            "timestamp": self.timestamp,
            "size": self.size,
            "chunksReceived": self.count,
            "processed": True,
        }
