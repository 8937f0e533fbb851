"""Camera capture, recording and streaming endpoints.

Every JSON response uses the envelope {success, message, data}.
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, File, Form, Response, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from camstream.errors import (
    CameraError,
    NoFrameAvailable,
    SessionNotFound,
    SourceTransientError,
    SourceUnavailable,
)
from camstream.service import OperationResult, get_service

logger = logging.getLogger(__name__)

router = APIRouter()

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class CameraRequest(BaseModel):
    """Request body shared by screenshot and start endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    camera_id: Optional[str] = Field(default=None, alias="cameraId")
    path: Optional[str] = None
    resolution: Optional[str] = None
    bitrate: Optional[int] = None


class DetectionBoxModel(BaseModel):
    """Normalized detection box as sent by a detector."""

    model_config = ConfigDict(allow_inf_nan=False)

    id: Optional[str] = None
    x: float
    y: float
    width: float
    height: float
    confidence: float = 0.0
    label: str = ""
    color: str = "#00FF00"


class ScreenshotRequest(CameraRequest):
    """Request body for a server-side screenshot."""

    detections: List[DetectionBoxModel] = Field(default_factory=list)
    quality: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class StopRecordingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


class StopStreamingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(alias="streamId")


class DetectionsUpdate(BaseModel):
    detections: List[DetectionBoxModel] = Field(default_factory=list)


def status_code_for(result: OperationResult) -> int:
    """Map a facade result to an HTTP status code."""
    if result.success:
        return 200
    error = result.error
    if isinstance(error, SessionNotFound):
        return 404
    if isinstance(error, (SourceUnavailable, SourceTransientError)):
        return 503
    if isinstance(error, NoFrameAvailable):
        return 422
    if isinstance(error, CameraError):
        return 500
    return 400


def envelope(result: OperationResult) -> JSONResponse:
    return JSONResponse(status_code=status_code_for(result), content=result.to_dict())


def missing_file(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "message": message})


async def read_upload(upload: UploadFile) -> Optional[bytes]:
    """Read an upload, or None if it exceeds the configured limit."""
    limit = get_service().settings.storage.max_upload_bytes
    data = await upload.read(limit + 1)
    if len(data) > limit:
        return None
    return data


def too_large() -> JSONResponse:
    return JSONResponse(status_code=413, content={"success": False, "message": "Upload too large"})


# -----------------------------------------------------------------------------
# Stills
# -----------------------------------------------------------------------------


@router.post("/screenshot")
async def take_screenshot(request: ScreenshotRequest):
    """Capture a composited still from a camera and save it.

    Returns:
        Envelope with filename, path, size and timestamp
    """
    service = get_service()
    result = await service.capture_still(
        request.camera_id,
        boxes=[box.model_dump() for box in request.detections],
        directory=request.path,
        quality=request.quality,
    )
    return envelope(result)


@router.post("/upload-screenshot")
async def upload_screenshot(
    image: Optional[UploadFile] = File(None),
    filename: Optional[str] = Form(None),
    path: Optional[str] = Form(None),
):
    """Store a screenshot captured by the client."""
    if image is None:
        return missing_file("No image file provided")

    data = await read_upload(image)
    if data is None:
        return too_large()

    service = get_service()
    result = await asyncio.to_thread(service.save_screenshot_upload, data, filename, path)
    return envelope(result)


# -----------------------------------------------------------------------------
# Recording
# -----------------------------------------------------------------------------


@router.post("/start-recording")
async def start_recording(request: CameraRequest):
    """Start a recording session.

    Returns:
        Envelope with sessionId, upload endpoint and echoed settings
    """
    service = get_service()
    result = await asyncio.to_thread(
        service.start_recording,
        request.camera_id,
        request.path,
        request.resolution,
        request.bitrate,
    )
    return envelope(result)


@router.post("/stop-recording")
async def stop_recording(request: StopRecordingRequest):
    """Stop a recording session and report its duration."""
    service = get_service()
    result = await asyncio.to_thread(service.stop_recording, request.session_id)
    return envelope(result)


@router.post("/upload-recording-chunk")
async def upload_recording_chunk(
    chunk: Optional[UploadFile] = File(None),
    session_id: str = Form("", alias="sessionId"),
    is_last_chunk: str = Form("false", alias="isLastChunk"),
):
    """Append one recorder chunk to a session.

    Args:
        chunk: Opaque media bytes
        session_id: Recording session id
        is_last_chunk: "true" on the final chunk, which completes the session
    """
    if chunk is None:
        return missing_file("No chunk file provided")

    data = await read_upload(chunk)
    if data is None:
        return too_large()

    service = get_service()
    is_final = is_last_chunk.strip().lower() == "true"
    result = await asyncio.to_thread(service.accept_recording_chunk, session_id, data, is_final)
    return envelope(result)


# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------


@router.post("/start-streaming")
async def start_streaming(request: CameraRequest):
    """Start a live stream.

    Returns immediately; the push transport is set up in the background.
    """
    service = get_service()
    result = await service.start_streaming(request.camera_id, request.resolution, request.bitrate)
    return envelope(result)


@router.post("/stop-streaming")
async def stop_streaming(request: StopStreamingRequest):
    """Stop a live stream and report its duration."""
    service = get_service()
    result = await service.stop_streaming(request.stream_id)
    return envelope(result)


@router.post("/stream-chunk")
async def stream_chunk(
    chunk: Optional[UploadFile] = File(None),
    stream_id: str = Form("", alias="streamId"),
    timestamp: Optional[str] = Form(None),
):
    """Receive one fallback-path stream segment."""
    if chunk is None:
        return missing_file("No stream chunk provided")

    data = await read_upload(chunk)
    if data is None:
        return too_large()

    service = get_service()
    return envelope(service.accept_stream_chunk(stream_id, data, timestamp))


@router.get("/stream/{stream_id}")
async def get_stream(stream_id: str):
    """Diagnostics for a running stream (transport, frames sent)."""
    return envelope(get_service().stream_info(stream_id))


@router.put("/stream/{stream_id}/detections")
async def update_detections(stream_id: str, update: DetectionsUpdate):
    """Replace the detection boxes drawn on a running stream."""
    service = get_service()
    result = service.update_stream_boxes(stream_id, [box.model_dump() for box in update.detections])
    return envelope(result)


# -----------------------------------------------------------------------------
# Cameras
# -----------------------------------------------------------------------------


@router.get("/status")
async def camera_status():
    """Camera catalog plus active recording and stream counts."""
    return envelope(get_service().get_status())


@router.get("/{camera_id}/stream")
async def camera_stream(camera_id: str):
    """Where to fetch live stills for a camera."""
    return envelope(get_service().camera_feed_info(camera_id))


@router.get("/{camera_id}/live-feed")
async def camera_live_feed(camera_id: str):
    """Get a live JPEG frame from a camera.

    Returns:
        JPEG image, or a JSON envelope on failure
    """
    service = get_service()
    result = await service.capture_still(camera_id, save=False)
    if not result.success or result.image is None:
        return envelope(result)

    return Response(
        content=result.image.data,
        media_type=result.image.mime_type,
        headers=NO_CACHE_HEADERS,
    )
