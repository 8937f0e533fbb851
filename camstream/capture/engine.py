"""Still image capture.

Pulls one frame from a source, composites detection overlays and encodes
the result as JPEG.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import cv2
import numpy as np

from camstream.capture.compositor import composite
from camstream.capture.source import END_OF_STREAM, FrameSource
from camstream.errors import EncodingFailed, NoFrameAvailable
from camstream.models.detection import DetectionBox
from camstream.storage import LocalStorage

logger = logging.getLogger(__name__)

DEFAULT_STILL_QUALITY = 0.9
JPEG_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class EncodedImage:
    """An encoded still image."""

    data: bytes
    width: int
    height: int
    mime_type: str = JPEG_MIME_TYPE
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.data)


def encode_jpeg(image: np.ndarray, quality: float = DEFAULT_STILL_QUALITY) -> bytes:
    """Encode a BGR image as JPEG.

    Args:
        image: BGR image (OpenCV format)
        quality: Encoder quality in [0, 1]

    Returns:
        JPEG bytes

    Raises:
        EncodingFailed: if OpenCV cannot encode the image
    """
    jpeg_quality = int(round(max(0.0, min(1.0, quality)) * 100))
    try:
        success, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, jpeg_quality])
    except cv2.error as e:
        raise EncodingFailed(f"OpenCV error encoding frame: {e}")

    if not success:
        raise EncodingFailed("JPEG encoder rejected frame")
    return encoded.tobytes()


class CaptureEngine:
    """Produces composited still images on demand.

    Usage:
        engine = CaptureEngine()
        with open_source(config) as source:
            image = engine.capture(source, boxes)
        path = engine.save(image, "camera1", "./uploads/screenshots")
    """

    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        default_quality: float = DEFAULT_STILL_QUALITY,
    ):
        self.storage = storage or LocalStorage()
        self.default_quality = default_quality

    def capture(
        self,
        source: FrameSource,
        boxes: Iterable[DetectionBox] = (),
        quality: Optional[float] = None,
    ) -> EncodedImage:
        """Capture one composited still.

        Raises:
            NoFrameAvailable: if the first pull returns END_OF_STREAM
            EncodingFailed: if the frame cannot be encoded
        """
        start_time = time.time()

        frame = source.next_frame()
        if frame is END_OF_STREAM:
            raise NoFrameAvailable("Source ended before a frame was available")

        composited = composite(frame, boxes)
        data = encode_jpeg(composited.image, self.default_quality if quality is None else quality)

        elapsed = (time.time() - start_time) * 1000
        logger.debug(f"Captured still {composited.width}x{composited.height} "
                     f"({len(data)} bytes) in {elapsed:.0f}ms")

        return EncodedImage(data=data, width=composited.width, height=composited.height)

    def save(self, image: EncodedImage, camera_id: str, directory: Path) -> Path:
        """Persist a still as ``screenshot_<camera>_<ms>.jpg`` in ``directory``.

        Raises:
            StorageUnavailable: if the directory cannot be prepared
            StorageWriteFailed: if the write fails
        """
        target_dir = self.storage.ensure_directory(directory)
        timestamp_ms = int(image.captured_at.timestamp() * 1000)
        path = target_dir / f"screenshot_{camera_id}_{timestamp_ms}.jpg"
        self.storage.write_file(path, image.data)
        logger.info(f"Saved screenshot from {camera_id} to {path}")
        return path
