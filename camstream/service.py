"""Service facade over capture, recording and streaming.

Every operation returns an OperationResult instead of raising, so the
HTTP layer (or any other caller) can report failures uniformly.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from camstream.capture.engine import CaptureEngine, EncodedImage
from camstream.capture.source import FrameSource, SourceConfig, open_source
from camstream.config import Settings, get_settings
from camstream.errors import CameraError
from camstream.models.camera import CameraInfo
from camstream.models.detection import DetectionBox, boxes_from_dicts
from camstream.models.session import SessionSettings, parse_resolution
from camstream.sessions.recording import RecordingSessionManager
from camstream.sessions.registry import SessionRegistry
from camstream.sessions.streaming import StreamingSessionManager
from camstream.storage import LocalStorage
from camstream.transport import AiohttpTransportFactory, TransportFactory

logger = logging.getLogger(__name__)

BoxesInput = Iterable[Union[DetectionBox, Dict[str, Any]]]


@dataclass
class OperationResult:
    """Outcome of one facade operation.

    ``error`` holds the exception behind a failure; ``image`` carries
    encoded bytes for operations that produce a still.
    """

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None
    image: Optional[EncodedImage] = None

    @classmethod
    def ok(cls, message: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> "OperationResult":
        return cls(success=True, message=message, data=data, **kwargs)

    @classmethod
    def failed(cls, message: str, error: Optional[Exception] = None) -> "OperationResult":
        detail = getattr(error, "message", None) or (str(error) if error else message)
        return cls(success=False, message=message, data={"error": detail}, error=error)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CameraService:
    """Wires registry, storage, capture engine and both session managers.

    Usage:
        service = CameraService()
        result = service.start_recording("camera1")
        service.accept_recording_chunk(result.data["sessionId"], chunk)
        service.stop_recording(result.data["sessionId"])
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[LocalStorage] = None,
        transports: Optional[TransportFactory] = None,
        source_opener: Callable[[SourceConfig], FrameSource] = open_source,
        registry: Optional[SessionRegistry] = None,
    ):
        """Initialize service.

        Args:
            settings: Service settings (uses global if not provided)
            storage: Filesystem collaborator
            transports: Stream transport factory (aiohttp if not provided)
            source_opener: Opens frame sources for stills and streams
            registry: Session registry (built from the camera catalog if not provided)
        """
        self.settings = settings or get_settings()
        self.storage = storage or LocalStorage()
        self._source_opener = source_opener
        self.registry = registry or SessionRegistry(self.settings.camera_catalog())

        self.engine = CaptureEngine(
            storage=self.storage,
            default_quality=self.settings.capture.still_quality,
        )

        recording = self.settings.recording
        self.recordings = RecordingSessionManager(
            self.registry,
            storage=self.storage,
            grace_period_seconds=recording.grace_period_seconds,
            chunk_extension=recording.chunk_extension,
            write_drain_timeout_seconds=recording.write_drain_timeout_seconds,
        )

        streaming = self.settings.streaming
        self.streams = StreamingSessionManager(
            self.registry,
            transports or AiohttpTransportFactory(streaming.connect_timeout_seconds),
            source_opener=source_opener,
            source_config_factory=self._source_config,
            grace_period_seconds=streaming.grace_period_seconds,
            refresh_rate_hz=streaming.refresh_rate_hz,
            fallback_interval_seconds=streaming.fallback_interval_seconds,
            frame_quality=streaming.frame_quality,
            push_url_template=streaming.push_url_template,
            fallback_url=streaming.fallback_url,
            http_endpoint=streaming.http_endpoint,
        )

    def _source_config(self, camera: CameraInfo, settings: Optional[SessionSettings] = None) -> SourceConfig:
        capture = self.settings.capture
        if settings is not None:
            width, height = settings.size
        else:
            width, height = capture.width, capture.height
        return SourceConfig(
            device=camera.device,
            width=width,
            height=height,
            frame_rate=capture.frame_rate,
            audio=capture.audio,
            open_timeout_seconds=capture.open_timeout_seconds,
        )

    def _session_settings(self, resolution: Optional[str], bitrate: Optional[int]) -> SessionSettings:
        """Build start settings, filling defaults. Raises ValueError on a bad resolution."""
        defaults = self.settings.recording
        settings = SessionSettings(
            resolution=resolution or defaults.default_resolution,
            bitrate=bitrate or defaults.default_bitrate,
        )
        parse_resolution(settings.resolution)
        return settings

    def _camera_id(self, camera_id: Optional[str]) -> str:
        return camera_id or self.settings.default_camera_id

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def start_recording(
        self,
        camera_id: Optional[str] = None,
        storage_path: Optional[Union[str, Path]] = None,
        resolution: Optional[str] = None,
        bitrate: Optional[int] = None,
    ) -> OperationResult:
        camera_id = self._camera_id(camera_id)
        try:
            settings = self._session_settings(resolution, bitrate)
            session = self.recordings.start(
                camera_id,
                storage_path or self.settings.recording.default_path,
                settings,
            )
        except (CameraError, ValueError) as e:
            logger.error(f"Start recording error: {e}")
            return OperationResult.failed("Failed to start recording", e)

        return OperationResult.ok(
            "Recording session started successfully",
            {
                "sessionId": session.id,
                "cameraId": session.camera_id,
                "filename": self.recordings.artifact_path(session).name,
                "path": str(session.storage_path),
                "startTime": session.start_time.isoformat(),
                "uploadEndpoint": self.settings.recording.upload_endpoint,
                "settings": session.settings.to_dict(),
            },
        )

    def accept_recording_chunk(self, session_id: str, payload: bytes, is_final: bool = False) -> OperationResult:
        try:
            receipt = self.recordings.accept_chunk(session_id, payload, is_final=is_final)
        except CameraError as e:
            logger.error(f"Upload recording chunk error: {e}")
            return OperationResult.failed("Failed to save recording chunk", e)

        message = "Recording completed and saved" if receipt.completed else "Chunk uploaded successfully"
        return OperationResult.ok(message, receipt.to_dict())

    def stop_recording(self, session_id: str) -> OperationResult:
        try:
            info = self.recordings.stop(session_id)
            session = self.registry.find(session_id)
        except CameraError as e:
            logger.error(f"Stop recording error: {e}")
            return OperationResult.failed("Failed to stop recording", e)

        data = {"sessionId": session_id, **info.to_dict()}
        if session is not None:
            data["path"] = str(session.storage_path)
            data["artifact"] = str(session.artifact_path) if session.artifact_path else None
        return OperationResult.ok("Recording stopped successfully", data)

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    async def start_streaming(
        self,
        camera_id: Optional[str] = None,
        resolution: Optional[str] = None,
        bitrate: Optional[int] = None,
    ) -> OperationResult:
        camera_id = self._camera_id(camera_id)
        try:
            settings = self._session_settings(resolution, bitrate)
            ticket = await self.streams.start(camera_id, settings)
        except (CameraError, ValueError) as e:
            logger.error(f"Start streaming error: {e}")
            return OperationResult.failed("Failed to start streaming", e)

        return OperationResult.ok(
            "Streaming session started successfully",
            {**ticket.to_dict(), "cameraId": camera_id},
        )

    def accept_stream_chunk(
        self,
        stream_id: str,
        payload: bytes,
        timestamp: Optional[str] = None,
    ) -> OperationResult:
        try:
            receipt = self.streams.accept_chunk(stream_id, payload, timestamp)
        except CameraError as e:
            logger.error(f"Stream chunk error: {e}")
            return OperationResult.failed("Failed to process stream chunk", e)
        return OperationResult.ok("Stream chunk processed", receipt.to_dict())

    async def stop_streaming(self, stream_id: str) -> OperationResult:
        try:
            info = await self.streams.stop(stream_id)
        except CameraError as e:
            logger.error(f"Stop streaming error: {e}")
            return OperationResult.failed("Failed to stop streaming", e)
        return OperationResult.ok("Streaming stopped successfully", {"streamId": stream_id, **info.to_dict()})

    def update_stream_boxes(self, stream_id: str, boxes: BoxesInput) -> OperationResult:
        try:
            count = self.streams.update_boxes(stream_id, boxes_from_dicts(boxes))
        except (CameraError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Update detections error: {e}")
            return OperationResult.failed("Failed to update detection boxes", e)
        return OperationResult.ok("Detection boxes updated", {"streamId": stream_id, "boxes": count})

    def stream_info(self, stream_id: str) -> OperationResult:
        try:
            info = self.streams.stream_info(stream_id)
        except CameraError as e:
            return OperationResult.failed("Streaming session not found", e)
        return OperationResult.ok("Stream info retrieved successfully", info)

    # -------------------------------------------------------------------------
    # Stills
    # -------------------------------------------------------------------------

    async def capture_still(
        self,
        camera_id: Optional[str] = None,
        boxes: Optional[BoxesInput] = None,
        directory: Optional[Union[str, Path]] = None,
        save: bool = True,
        quality: Optional[float] = None,
    ) -> OperationResult:
        """Capture one composited still, optionally saving it.

        The source is opened for this capture only and always closed.
        """
        camera_id = self._camera_id(camera_id)
        try:
            detection_boxes = boxes_from_dicts(boxes)
            camera = self.registry.get_camera(camera_id)
            image = await asyncio.to_thread(self._capture_blocking, camera, detection_boxes, quality)

            data: Dict[str, Any] = {
                "cameraId": camera_id,
                "timestamp": image.captured_at.isoformat(),
                "size": image.size,
                "width": image.width,
                "height": image.height,
            }
            if save:
                target = directory or self.settings.storage.screenshot_path
                path = await asyncio.to_thread(self.engine.save, image, camera_id, target)
                data["filename"] = path.name
                data["path"] = str(path)
        except (CameraError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Screenshot error: {e}")
            return OperationResult.failed("Failed to capture screenshot", e)

        message = "Screenshot saved successfully" if save else "Frame captured successfully"
        return OperationResult.ok(message, data, image=image)

    def _capture_blocking(self, camera: CameraInfo, boxes: list, quality: Optional[float]) -> EncodedImage:
        with self._source_opener(self._source_config(camera)) as source:
            return self.engine.capture(source, boxes, quality)

    def save_screenshot_upload(
        self,
        payload: bytes,
        filename: Optional[str] = None,
        directory: Optional[Union[str, Path]] = None,
    ) -> OperationResult:
        """Store a client-captured still as-is."""
        # Only the final path component is honored
        name = Path(filename).name if filename else ""
        if not name:
            name = f"screenshot_{int(datetime.now(timezone.utc).timestamp() * 1000)}.jpg"

        try:
            target_dir = self.storage.ensure_directory(directory or self.settings.storage.screenshot_path)
            path = target_dir / name
            size = self.storage.write_file(path, payload)
        except CameraError as e:
            logger.error(f"Upload screenshot error: {e}")
            return OperationResult.failed("Failed to save screenshot", e)

        logger.info(f"Saved uploaded screenshot to {path}")
        return OperationResult.ok(
            "Screenshot saved successfully",
            {"filename": name, "path": str(path), "size": size, "timestamp": _now_iso()},
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> OperationResult:
        status = self.registry.status()
        status["timestamp"] = _now_iso()
        return OperationResult.ok("Camera status retrieved successfully", status)

    def camera_feed_info(self, camera_id: str) -> OperationResult:
        """Where to fetch live stills of a catalog camera."""
        try:
            camera = self.registry.get_camera(camera_id)
        except CameraError as e:
            return OperationResult.failed("Camera not found", e)
        return OperationResult.ok(
            "Camera stream URL retrieved successfully",
            {
                "cameraId": camera.id,
                "streamUrl": f"/api/camera/{camera.id}/live-feed",
                "resolution": camera.resolution,
                "frameRate": self.settings.capture.frame_rate,
                "status": camera.state.value,
            },
        )

    async def shutdown(self) -> None:
        """Stop every stream and cancel pending purges."""
        await self.streams.shutdown()
        self.registry.shutdown()
        logger.info("Camera service shut down")


# Global service instance (lazy loaded)
_service: Optional[CameraService] = None


def get_service() -> CameraService:
    """Get or create the global camera service instance."""
    global _service
    if _service is None:
        _service = CameraService()
    return _service


def reset_service() -> None:
    """Drop the global instance so the next get_service() builds a new one."""
    global _service
    _service = None
