"""Frame source adapter.

Wraps a camera (local device index, device path or network stream URL)
behind a small pull interface: ``next_frame()`` returns the next
timestamped frame or ``END_OF_STREAM``, and ``close()`` releases the
device. A synthetic test pattern source is available with the device
selector ``testpattern`` for demos and tests.
"""

import logging
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from camstream.errors import SourceFailureReason, SourceTransientError, SourceUnavailable
from camstream.models.camera import mask_device

logger = logging.getLogger(__name__)

TEST_PATTERN_DEVICE = "testpattern"


@dataclass
class SourceConfig:
    """How to open a frame source."""

    device: str = "0"
    width: int = 1920
    height: int = 1080
    frame_rate: int = 30
    audio: bool = True
    open_timeout_seconds: float = 10.0


@dataclass
class RawFrame:
    """A decoded BGR frame with capture metadata."""

    image: np.ndarray
    timestamp: float
    index: int = 0

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


class _EndOfStream:
    """Sentinel returned once a source has no more frames."""

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()

FrameOrEnd = Union[RawFrame, _EndOfStream]


class FrameSource(ABC):
    """Pull interface over a live media source."""

    @abstractmethod
    def next_frame(self) -> FrameOrEnd:
        """Return the next frame, or END_OF_STREAM when exhausted."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying device. Idempotent."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once close() has been called."""

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class OpenCVSource(FrameSource):
    """Frame source backed by cv2.VideoCapture.

    Reads and release are serialized on an internal lock; ``close()``
    flags the source first so a concurrent reader stops on its next call.
    """

    def __init__(self, config: SourceConfig, capture: cv2.VideoCapture):
        self.config = config
        self._capture = capture
        self._lock = threading.Lock()
        self._closed = False
        self._index = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def next_frame(self) -> FrameOrEnd:
        if self._closed:
            return END_OF_STREAM

        with self._lock:
            if self._closed:
                return END_OF_STREAM
            try:
                ret, image = self._capture.read()
            except cv2.error as e:
                raise SourceTransientError(f"OpenCV error reading frame: {e}")

        if not ret or image is None:
            logger.debug(f"Source {mask_device(self.config.device)} returned no frame")
            return END_OF_STREAM

        self._index += 1
        return RawFrame(image=image, timestamp=time.time(), index=self._index)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._lock:
            self._capture.release()
        logger.debug(f"Released source {mask_device(self.config.device)}")


class TestPatternSource(FrameSource):
    """Deterministic synthetic source.

    Frame N is a fixed gradient with a white vertical bar at column
    ``N % width``. With ``max_frames`` set, the stream ends after that
    many frames.
    """

    __test__ = False

    def __init__(self, width: int = 640, height: int = 480, max_frames: Optional[int] = None):
        self.width = width
        self.height = height
        self.max_frames = max_frames
        self._index = 0
        self._closed = False
        self._lock = threading.Lock()

        ramp_x = np.linspace(0, 255, width, dtype=np.uint8)
        ramp_y = np.linspace(0, 255, height, dtype=np.uint8)
        self._base = np.zeros((height, width, 3), dtype=np.uint8)
        self._base[:, :, 0] = ramp_x[np.newaxis, :]
        self._base[:, :, 1] = ramp_y[:, np.newaxis]
        self._base[:, :, 2] = 64

    @property
    def closed(self) -> bool:
        return self._closed

    def next_frame(self) -> FrameOrEnd:
        with self._lock:
            if self._closed:
                return END_OF_STREAM
            if self.max_frames is not None and self._index >= self.max_frames:
                return END_OF_STREAM
            index = self._index
            self._index += 1

        image = self._base.copy()
        image[:, index % self.width] = (255, 255, 255)
        return RawFrame(image=image, timestamp=time.time(), index=index)

    def close(self) -> None:
        self._closed = True


def _parse_test_pattern(device: str) -> Optional[int]:
    """Frame limit from 'testpattern:N', None for an endless pattern."""
    _, _, limit = device.partition(":")
    if not limit:
        return None
    try:
        return max(0, int(limit))
    except ValueError:
        raise SourceUnavailable(f"Invalid test pattern selector: {device}")


def _check_local_device(path: Path) -> None:
    """Raise SourceUnavailable if a local device node is absent or unreadable."""
    if not path.exists():
        raise SourceUnavailable(
            f"Camera device not found: {path}",
            reason=SourceFailureReason.DEVICE_ABSENT,
        )
    if not os.access(path, os.R_OK):
        raise SourceUnavailable(
            f"Permission denied for camera device: {path}",
            reason=SourceFailureReason.PERMISSION_DENIED,
        )


def open_source(config: SourceConfig) -> FrameSource:
    """Open a frame source.

    Args:
        config: Device selector and requested capture format

    Returns:
        An open FrameSource

    Raises:
        SourceUnavailable: device absent, permission denied or busy
        SourceTransientError: backend error while opening (retry may help)
    """
    device = config.device.strip()

    if device.split(":", 1)[0] == TEST_PATTERN_DEVICE:
        logger.info(f"Opening test pattern source {config.width}x{config.height}")
        return TestPatternSource(config.width, config.height, _parse_test_pattern(device))

    is_url = "://" in device
    target: Union[int, str] = device

    if device.isdigit():
        target = int(device)
        if sys.platform.startswith("linux") and Path("/dev").exists():
            _check_local_device(Path(f"/dev/video{target}"))
    elif not is_url:
        _check_local_device(Path(device))

    if config.audio:
        logger.debug("Audio requested; OpenCV backend captures video only")

    logger.info(f"Opening source {mask_device(device)} "
                f"({config.width}x{config.height}@{config.frame_rate})")

    try:
        capture = cv2.VideoCapture()
        if is_url:
            timeout_ms = int(config.open_timeout_seconds * 1000)
            capture.set(cv2.CAP_PROP_OPEN_TIMEOUT_MSEC, timeout_ms)
            capture.set(cv2.CAP_PROP_READ_TIMEOUT_MSEC, timeout_ms)
            capture.open(target, cv2.CAP_FFMPEG)
        else:
            capture.open(target)
    except cv2.error as e:
        raise SourceTransientError(f"OpenCV error opening {mask_device(device)}: {e}")

    if not capture.isOpened():
        capture.release()
        reason = SourceFailureReason.DEVICE_ABSENT if is_url else SourceFailureReason.DEVICE_BUSY
        raise SourceUnavailable(f"Failed to open camera source {mask_device(device)}", reason=reason)

    # Requested format is best effort; drivers may pick the closest mode
    if config.width > 0:
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, config.width)
    if config.height > 0:
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, config.height)
    if config.frame_rate > 0:
        capture.set(cv2.CAP_PROP_FPS, config.frame_rate)
    capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    return OpenCVSource(config, capture)
