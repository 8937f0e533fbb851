import asyncio
from typing import List, Optional

import numpy as np
import pytest

from camstream.capture.source import END_OF_STREAM, FrameSource, RawFrame, TestPatternSource
from camstream.config import Settings
from camstream.errors import TransportFailed
from camstream.models.camera import CameraInfo
from camstream.sessions.registry import SessionRegistry
from camstream.transport import FallbackChannel, PushChannel, TransportFactory


class ManualClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TrackingSource(FrameSource):
    """Small synthetic source that counts close() calls."""

    def __init__(self, width: int = 64, height: int = 48, max_frames: Optional[int] = None):
        self._pattern = TestPatternSource(width, height, max_frames)
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self._pattern.closed

    def next_frame(self):
        return self._pattern.next_frame()

    def close(self) -> None:
        self.close_calls += 1
        self._pattern.close()


class EmptySource(FrameSource):
    def __init__(self):
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def next_frame(self):
        return END_OF_STREAM

    def close(self) -> None:
        self._closed = True


class BlackSource(FrameSource):
    """Delivers all-black frames of a fixed size."""

    def __init__(self, width: int = 640, height: int = 480):
        self.width = width
        self.height = height
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def next_frame(self):
        image = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        return RawFrame(image=image, timestamp=0.0, index=0)

    def close(self) -> None:
        self._closed = True


class FakePushChannel(PushChannel):
    def __init__(self, drop_after: Optional[int] = None, fail_close: bool = False):
        self.sent: List[bytes] = []
        self.drop_after = drop_after
        self.fail_close = fail_close
        self.close_calls = 0
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportFailed("closed")
        self.sent.append(data)
        if self.drop_after is not None and len(self.sent) >= self.drop_after:
            self._open = False

    async def close(self) -> None:
        self.close_calls += 1
        self._open = False
        if self.fail_close:
            raise RuntimeError("close exploded")


class FakeFallbackChannel(FallbackChannel):
    def __init__(self):
        self.sent: List[bytes] = []
        self.close_calls = 0

    async def send(self, data: bytes, timestamp: Optional[float] = None) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.close_calls += 1


class FakeTransports(TransportFactory):
    """Transport factory whose channels live in memory."""

    def __init__(
        self,
        push_fails: bool = False,
        fallback_fails: bool = False,
        push_drop_after: Optional[int] = None,
        push_fail_close: bool = False,
    ):
        self.push_fails = push_fails
        self.fallback_fails = fallback_fails
        self.push_drop_after = push_drop_after
        self.push_fail_close = push_fail_close
        self.push_targets: List[str] = []
        self.fallback_targets: List[str] = []
        self.push_channels: List[FakePushChannel] = []
        self.fallback_channels: List[FakeFallbackChannel] = []

    async def open_push_channel(self, target: str) -> PushChannel:
        self.push_targets.append(target)
        if self.push_fails:
            raise TransportFailed(f"refused: {target}")
        channel = FakePushChannel(self.push_drop_after, self.push_fail_close)
        self.push_channels.append(channel)
        return channel

    async def open_fallback_channel(self, target: str, stream_id: str) -> FallbackChannel:
        self.fallback_targets.append(target)
        if self.fallback_fails:
            raise TransportFailed(f"refused: {target}")
        channel = FakeFallbackChannel()
        self.fallback_channels.append(channel)
        return channel


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll predicate on the running loop until it holds or timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


CAMERAS = [
    CameraInfo(id="camera1", name="Camera 1 (Main Entrance)", device="testpattern"),
    CameraInfo(id="camera2", name="Camera 2 (Side View)", device="testpattern", resolution="1280x720"),
]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def registry():
    registry = SessionRegistry(CAMERAS)
    yield registry
    registry.shutdown()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        cameras=[camera.to_dict() for camera in CAMERAS],
        recording={"default_path": tmp_path / "recordings", "grace_period_seconds": 1.0},
        streaming={"grace_period_seconds": 0.5, "connect_timeout_seconds": 0.5},
        storage={"screenshot_path": tmp_path / "screenshots"},
    )
