"""Live streaming session lifecycle.

Transport state machine per stream (invisible to session status, which
stays ACTIVE until stop):

    CONNECTING -> PRIMARY  -> FALLBACK -> HALTED
         |                       ^
         +-----------------------+        (primary never opened)

    any state -> CLOSED on stop

The fallback transport is attempted at most once per stream. If it also
fails, output halts but the session remains ACTIVE until stopped.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from camstream.capture.compositor import composite
from camstream.capture.engine import encode_jpeg
from camstream.capture.source import END_OF_STREAM, FrameSource, RawFrame, SourceConfig, open_source
from camstream.errors import EncodingFailed, SessionNotFound, SourceTransientError, TransportFailed
from camstream.models.camera import CameraInfo
from camstream.models.detection import DetectionBox
from camstream.models.session import (
    DurationInfo,
    Session,
    SessionKind,
    SessionSettings,
    SessionStatus,
    StreamChunkReceipt,
)
from camstream.sessions.registry import SessionRegistry
from camstream.transport import FallbackChannel, PushChannel, TransportFactory

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 1.0
DEFAULT_REFRESH_RATE_HZ = 60.0
DEFAULT_FALLBACK_INTERVAL_SECONDS = 0.1
DEFAULT_FRAME_QUALITY = 0.8

ChunkListener = Callable[[str, bytes, Optional[str]], None]
SourceConfigFactory = Callable[[CameraInfo, SessionSettings], SourceConfig]


class TransportMode(Enum):
    """Which transport a stream is currently using."""

    CONNECTING = "connecting"
    PRIMARY = "primary"
    FALLBACK = "fallback"
    HALTED = "halted"
    CLOSED = "closed"


def default_source_config(camera: CameraInfo, settings: SessionSettings) -> SourceConfig:
    width, height = settings.size
    return SourceConfig(device=camera.device, width=width, height=height)


@dataclass
class StreamTicket:
    """What a caller gets back from start(): id plus connection targets."""

    session: Session
    stream_url: str
    http_endpoint: str

    @property
    def stream_id(self) -> str:
        return self.session.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streamId": self.session.id,
            "streamUrl": self.stream_url,
            "httpEndpoint": self.http_endpoint,
            "startTime": self.session.start_time.isoformat(),
            "settings": self.session.settings.to_dict(),
        }


@dataclass
class _StreamHandle:
    """Runtime resources of one stream, owned by the manager."""

    session: Session
    source: FrameSource
    boxes: Tuple[DetectionBox, ...] = ()
    mode: TransportMode = TransportMode.CONNECTING
    push_channel: Optional[PushChannel] = None
    fallback_channel: Optional[FallbackChannel] = None
    fallback_attempted: bool = False
    task: Optional[asyncio.Task] = None
    frames_sent: int = 0
    last_timestamp: Optional[float] = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    stopped: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def stream_id(self) -> str:
        return self.session.id


class StreamingSessionManager:
    """Owns start / relay / accept_chunk / stop for live streams.

    Must be used from a single asyncio event loop. Blocking work (source
    open/read, JPEG encoding) runs in worker threads.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        transports: TransportFactory,
        source_opener: Callable[[SourceConfig], FrameSource] = open_source,
        source_config_factory: SourceConfigFactory = default_source_config,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        refresh_rate_hz: float = DEFAULT_REFRESH_RATE_HZ,
        fallback_interval_seconds: float = DEFAULT_FALLBACK_INTERVAL_SECONDS,
        frame_quality: float = DEFAULT_FRAME_QUALITY,
        push_url_template: str = "ws://localhost:8080/api/camera/stream/{stream_id}",
        fallback_url: str = "http://localhost:8080/api/camera/stream-chunk",
        http_endpoint: str = "/api/camera/stream-chunk",
    ):
        self.registry = registry
        self.transports = transports
        self._source_opener = source_opener
        self._source_config_factory = source_config_factory
        self.grace_period_seconds = grace_period_seconds
        self.frame_interval = 1.0 / refresh_rate_hz
        self.fallback_interval = fallback_interval_seconds
        self.frame_quality = frame_quality
        self.push_url_template = push_url_template
        self.fallback_url = fallback_url
        self.http_endpoint = http_endpoint

        self._handles: Dict[str, _StreamHandle] = {}
        self._listeners: List[ChunkListener] = []
        self._chunk_counts: Dict[str, int] = {}
        self._chunk_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, camera_id: str, settings: Optional[SessionSettings] = None) -> StreamTicket:
        """Start a stream and return without waiting for the transport.

        Raises:
            SourceUnavailable: camera unknown or device cannot be acquired
            SourceTransientError: backend error opening the device
        """
        settings = settings or SessionSettings()
        camera = self.registry.get_camera(camera_id)
        config = self._source_config_factory(camera, settings)

        source = await asyncio.to_thread(self._source_opener, config)
        try:
            session = self.registry.create(SessionKind.STREAMING, camera_id, settings=settings)
        except Exception:
            await asyncio.to_thread(source.close)
            raise

        handle = _StreamHandle(session=session, source=source)
        self._handles[session.id] = handle

        target = self.push_url_template.format(stream_id=session.id)
        handle.task = asyncio.create_task(self._run(handle, target), name=f"relay-{session.id}")

        logger.info(f"Starting streaming session {session.id} from camera {camera_id}")
        return StreamTicket(session=session, stream_url=target, http_endpoint=self.http_endpoint)

    async def stop(self, stream_id: str) -> DurationInfo:
        """Stop a stream. Idempotent; concurrent callers get the same result.

        Raises:
            SessionNotFound: stream absent
        """
        won = self.registry.begin_stop(stream_id, SessionKind.STREAMING)
        session = self.registry.get(stream_id, SessionKind.STREAMING)
        handle = self._handles.get(stream_id)

        if not won:
            if session.status == SessionStatus.STOPPING and handle is not None:
                await handle.stopped.wait()
            return session.duration_info()

        try:
            if handle is not None:
                await self._release(handle)
        finally:
            session, _ = self.registry.complete(stream_id, SessionKind.STREAMING)
            self.registry.schedule_removal(stream_id, self.grace_period_seconds)
            with self._chunk_lock:
                self._chunk_counts.pop(stream_id, None)
            if handle is not None:
                handle.mode = TransportMode.CLOSED
                self._handles.pop(stream_id, None)
                handle.stopped.set()

        info = session.duration_info()
        logger.info(f"Stopping streaming session: {stream_id}, duration: {info.duration}")
        return info

    async def shutdown(self) -> None:
        """Stop every running stream."""
        for stream_id in list(self._handles):
            try:
                await self.stop(stream_id)
            except SessionNotFound:
                pass

    async def _release(self, handle: _StreamHandle) -> None:
        """Cancel the relay task, then close channels and the source.

        Each step runs even if an earlier one fails.
        """
        handle.cancelled.set()
        try:
            if handle.task is not None and not handle.task.done():
                handle.task.cancel()
                await asyncio.gather(handle.task, return_exceptions=True)
        finally:
            try:
                await self._close_channel(handle.push_channel, handle.stream_id)
            finally:
                try:
                    await self._close_channel(handle.fallback_channel, handle.stream_id)
                finally:
                    await asyncio.to_thread(handle.source.close)

    @staticmethod
    async def _close_channel(channel, stream_id: str) -> None:
        if channel is None:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {stream_id}: {e}")

    # -------------------------------------------------------------------------
    # Relay
    # -------------------------------------------------------------------------

    async def _run(self, handle: _StreamHandle, target: str) -> None:
        """Background task: primary relay, then at most one fallback."""
        try:
            if await self._relay_primary(handle, target):
                return
            await self._close_channel(handle.push_channel, handle.stream_id)
            handle.push_channel = None
            if not handle.cancelled.is_set():
                await self._relay_fallback(handle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            handle.mode = TransportMode.HALTED
            logger.error(f"Relay for {handle.stream_id} stopped unexpectedly: {e}")

    async def _relay_primary(self, handle: _StreamHandle, target: str) -> bool:
        """Push frames at display-refresh cadence.

        Returns:
            True if the loop ended on its own terms (stop, end of stream),
            False if the primary transport failed and fallback should run.
        """
        try:
            channel = await self.transports.open_push_channel(target)
        except TransportFailed as e:
            logger.warning(f"Primary transport for {handle.stream_id} unavailable: {e}")
            return False

        handle.push_channel = channel
        if handle.cancelled.is_set():
            return True

        handle.mode = TransportMode.PRIMARY
        while not handle.cancelled.is_set():
            if not channel.is_open:
                logger.warning(f"Streaming WebSocket for {handle.stream_id} disconnected")
                return False

            data, ended = await self._next_payload(handle)
            if ended:
                return True

            # Only one frame in flight; a slow consumer just means skipped ticks
            if data is not None and channel.is_open and not handle.cancelled.is_set():
                try:
                    await channel.send(data)
                except TransportFailed as e:
                    logger.warning(f"Primary transport for {handle.stream_id} failed: {e}")
                    return False
                handle.frames_sent += 1

            await self._wait_tick(handle, self.frame_interval)
        return True

    async def _relay_fallback(self, handle: _StreamHandle) -> None:
        """Upload segments periodically. Attempted once per stream."""
        if handle.fallback_attempted:
            return
        handle.fallback_attempted = True

        try:
            channel = await self.transports.open_fallback_channel(self.fallback_url, handle.stream_id)
        except TransportFailed as e:
            handle.mode = TransportMode.HALTED
            logger.error(f"Fallback transport for {handle.stream_id} failed: {e}; output halted")
            return

        handle.fallback_channel = channel
        if handle.cancelled.is_set():
            return

        handle.mode = TransportMode.FALLBACK
        logger.info(f"Stream {handle.stream_id} switched to HTTP chunk fallback")

        while not handle.cancelled.is_set():
            data, ended = await self._next_payload(handle)
            if ended:
                return

            if data is not None:
                try:
                    await channel.send(data, handle.last_timestamp)
                except TransportFailed as e:
                    handle.mode = TransportMode.HALTED
                    logger.error(f"Fallback transport for {handle.stream_id} failed: {e}; output halted")
                    return
                handle.frames_sent += 1

            await self._wait_tick(handle, self.fallback_interval)

    async def _next_payload(self, handle: _StreamHandle) -> Tuple[Optional[bytes], bool]:
        """Pull, composite and encode one frame.

        Returns:
            (data, ended). data is None for a skipped frame; ended is True
            once the source is exhausted.
        """
        try:
            frame = await asyncio.to_thread(handle.source.next_frame)
        except SourceTransientError as e:
            logger.debug(f"Skipping frame for {handle.stream_id}: {e}")
            return None, False

        if frame is END_OF_STREAM:
            handle.mode = TransportMode.HALTED
            logger.info(f"Source for {handle.stream_id} ended; relay stopped")
            return None, True

        handle.last_timestamp = frame.timestamp
        try:
            data = await asyncio.to_thread(self._render, frame, handle.boxes)
        except EncodingFailed as e:
            logger.debug(f"Skipping frame for {handle.stream_id}: {e}")
            return None, False
        except Exception as e:
            logger.error(f"Failed to render frame for {handle.stream_id}, skipping: {e}")
            return None, False
        return data, False

    def _render(self, frame: RawFrame, boxes: Iterable[DetectionBox]) -> bytes:
        return encode_jpeg(composite(frame, boxes).image, self.frame_quality)

    @staticmethod
    async def _wait_tick(handle: _StreamHandle, interval: float) -> None:
        """Sleep until the next tick, waking immediately on cancellation."""
        try:
            await asyncio.wait_for(handle.cancelled.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    # -------------------------------------------------------------------------
    # Chunks, overlays and introspection
    # -------------------------------------------------------------------------

    def add_chunk_listener(self, listener: ChunkListener) -> None:
        """Register a callback(stream_id, payload, timestamp) for uploaded chunks."""
        self._listeners.append(listener)

    def accept_chunk(self, stream_id: str, payload: bytes, timestamp: Optional[str] = None) -> StreamChunkReceipt:
        """Accept a fallback-path chunk and forward it to listeners.

        Never changes session status.

        Raises:
            SessionNotFound: stream absent
        """
        session = self.registry.get(stream_id, SessionKind.STREAMING)

        # Counts are dropped on stop; late chunks are forwarded but not counted
        with self._chunk_lock:
            count = self._chunk_counts.get(stream_id, 0)
            if session.is_active:
                count += 1
                self._chunk_counts[stream_id] = count

        logger.debug(f"Processing stream chunk for session {stream_id} at {timestamp} ({len(payload)} bytes)")

        for listener in self._listeners:
            try:
                listener(stream_id, payload, timestamp)
            except Exception as e:
                logger.error(f"Stream chunk listener error: {e}")

        return StreamChunkReceipt(stream_id=stream_id, timestamp=timestamp, size=len(payload), count=count)

    def update_boxes(self, stream_id: str, boxes: Iterable[DetectionBox]) -> int:
        """Replace the overlay boxes drawn on a running stream.

        Returns:
            Number of boxes now active

        Raises:
            SessionNotFound: stream absent or already stopping
        """
        handle = self._handles.get(stream_id)
        if handle is None or handle.cancelled.is_set():
            raise SessionNotFound(stream_id)
        handle.boxes = tuple(boxes)
        return len(handle.boxes)

    def transport_state(self, stream_id: str) -> TransportMode:
        """Current transport of a running stream.

        Raises:
            SessionNotFound: stream not running
        """
        handle = self._handles.get(stream_id)
        if handle is None:
            raise SessionNotFound(stream_id)
        return handle.mode

    def stream_info(self, stream_id: str) -> Dict[str, Any]:
        """Diagnostics for a running stream."""
        handle = self._handles.get(stream_id)
        if handle is None:
            raise SessionNotFound(stream_id)
        with self._chunk_lock:
            chunks = self._chunk_counts.get(stream_id, 0)
        return {
            **handle.session.to_dict(),
            "transport": handle.mode.value,
            "framesSent": handle.frames_sent,
            "chunksReceived": chunks,
            "boxes": len(handle.boxes),
        }
