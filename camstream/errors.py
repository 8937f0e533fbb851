"""Exception taxonomy for the capture and session engine.

Every error carries a human-readable message so the service facade can
report it back to operators unchanged.
"""

from enum import Enum
from typing import Optional


class CameraError(Exception):
    """Base class for all capture/session errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SourceFailureReason(Enum):
    """Why a frame source could not be acquired."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_BUSY = "device_busy"
    DEVICE_ABSENT = "device_absent"


class SourceUnavailable(CameraError):
    """Device could not be acquired. Not worth retrying without intervention."""

    def __init__(self, message: str, reason: SourceFailureReason = SourceFailureReason.DEVICE_ABSENT):
        super().__init__(message)
        self.reason = reason


class SourceTransientError(CameraError):
    """Backend hiccup while opening or reading a source. Safe to retry."""


class NoFrameAvailable(CameraError):
    """Source ended before the first usable frame."""


class EncodingFailed(CameraError):
    """Image encoder rejected a frame."""


class SessionNotFound(CameraError):
    """Session id unknown, purged, or in a state incompatible with the call."""

    def __init__(self, session_id: str, message: Optional[str] = None):
        super().__init__(message or f"Session not found: {session_id}")
        self.session_id = session_id


class SessionConflict(CameraError):
    """A session with the generated id already exists."""


class StorageUnavailable(CameraError):
    """Target directory could not be prepared."""


class StorageWriteFailed(CameraError):
    """A chunk or artifact could not be written."""


class TransportFailed(CameraError):
    """Push channel could not be established or dropped."""
