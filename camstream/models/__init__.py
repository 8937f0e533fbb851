"""Data models for the capture service."""

from camstream.models.camera import DEFAULT_CAMERAS, CameraInfo, CameraState, mask_device
from camstream.models.detection import DetectionBox, boxes_from_dicts
from camstream.models.session import (
    ChunkReceipt,
    DurationInfo,
    Session,
    SessionKind,
    SessionSettings,
    SessionStatus,
    StreamChunkReceipt,
    format_duration,
)

__all__ = [
    "DEFAULT_CAMERAS",
    "CameraInfo",
    "CameraState",
    "ChunkReceipt",
    "DetectionBox",
    "DurationInfo",
    "Session",
    "SessionKind",
    "SessionSettings",
    "SessionStatus",
    "StreamChunkReceipt",
    "boxes_from_dicts",
    "format_duration",
    "mask_device",
]
