"""Frame sources, overlay compositing and still capture."""

from camstream.capture.compositor import composite
from camstream.capture.engine import CaptureEngine, EncodedImage, encode_jpeg
from camstream.capture.source import (
    END_OF_STREAM,
    FrameSource,
    RawFrame,
    SourceConfig,
    TestPatternSource,
    open_source,
)

__all__ = [
    "END_OF_STREAM",
    "CaptureEngine",
    "EncodedImage",
    "FrameSource",
    "RawFrame",
    "SourceConfig",
    "TestPatternSource",
    "composite",
    "encode_jpeg",
    "open_source",
]
