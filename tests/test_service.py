import re
from pathlib import Path

import pytest

from conftest import EmptySource, FakeTransports, TrackingSource, wait_until

from camstream.errors import NoFrameAvailable, SessionNotFound, SourceUnavailable
from camstream.models.detection import DetectionBox
from camstream.service import CameraService, OperationResult


@pytest.fixture
def transports():
    return FakeTransports(push_fails=True)


@pytest.fixture
def service(settings, transports):
    service = CameraService(settings=settings, transports=transports, source_opener=lambda config: TrackingSource())
    yield service
    service.registry.shutdown()


def test_operation_result_envelope():
    ok = OperationResult.ok("done", {"a": 1})
    assert ok.to_dict() == {"success": True, "message": "done", "data": {"a": 1}}

    failed = OperationResult.failed("Failed", SessionNotFound("x"))
    assert failed.to_dict() == {"success": False, "message": "Failed", "data": {"error": "Session not found: x"}}


def test_recording_round_trip(service, settings):
    started = service.start_recording()
    assert started.success
    session_id = started.data["sessionId"]
    assert re.fullmatch(r"rec_\d+_camera1", session_id)
    assert started.data["settings"] == {"resolution": "1920x1080", "bitrate": 2500000}
    assert started.data["filename"] == f"recording_{session_id}.webm"
    assert Path(started.data["path"]) == settings.recording.default_path

    chunk = service.accept_recording_chunk(session_id, b"one")
    assert chunk.success
    assert chunk.message == "Chunk uploaded successfully"

    last = service.accept_recording_chunk(session_id, b"two", is_final=True)
    assert last.message == "Recording completed and saved"
    assert last.data["isCompleted"] is True
    assert Path(last.data["artifact"]).read_bytes() == b"onetwo"

    stopped = service.stop_recording(session_id)
    assert stopped.success
    assert stopped.data["sessionId"] == session_id
    assert re.fullmatch(r"\d\d:\d\d:\d\d", stopped.data["duration"])
    assert stopped.data["artifact"] == last.data["artifact"]


def test_recording_errors_become_failed_results(service):
    bad_resolution = service.start_recording("camera1", resolution="huge")
    assert not bad_resolution.success
    assert bad_resolution.error.__class__ is ValueError

    unknown_camera = service.start_recording("camera9")
    assert isinstance(unknown_camera.error, SourceUnavailable)

    missing = service.stop_recording("rec_999_x")
    assert not missing.success
    assert isinstance(missing.error, SessionNotFound)
    assert missing.data == {"error": "Session not found: rec_999_x"}

    chunk = service.accept_recording_chunk("rec_999_x", b"data")
    assert isinstance(chunk.error, SessionNotFound)


@pytest.mark.asyncio
async def test_capture_still_saves_screenshot(service, settings):
    result = await service.capture_still("camera2", boxes=[{"x": 0.1, "y": 0.1, "w": 0.5, "h": 0.5, "label": "cat"}])

    assert result.success
    assert result.image is not None
    assert re.fullmatch(r"screenshot_camera2_\d+\.jpg", result.data["filename"])
    assert Path(result.data["path"]).parent == settings.storage.screenshot_path
    assert Path(result.data["path"]).read_bytes() == result.image.data


@pytest.mark.asyncio
async def test_capture_still_without_frame(settings, transports):
    service = CameraService(settings=settings, transports=transports, source_opener=lambda config: EmptySource())

    result = await service.capture_still("camera1", save=False)

    assert not result.success
    assert isinstance(result.error, NoFrameAvailable)


@pytest.mark.asyncio
async def test_capture_still_rejects_non_finite_box_json(service):
    result = await service.capture_still("camera1", boxes=[{"x": "inf", "y": 0.1, "width": 0.2, "height": 0.2}], save=False)

    assert not result.success
    assert result.message == "Failed to capture screenshot"
    assert isinstance(result.error, ValueError)


@pytest.mark.asyncio
async def test_capture_still_clamps_non_finite_boxes(service):
    box = DetectionBox(float("inf"), float("nan"), 0.2, float("-inf"), float("nan"), "ghost")

    result = await service.capture_still("camera1", boxes=[box], save=False)

    assert result.success
    assert result.image.data[:2] == b"\xff\xd8"

def test_uploaded_screenshot_keeps_only_file_name(service, settings):
    result = service.save_screenshot_upload(b"jpegdata", filename="../../evil.jpg")

    assert result.success
    assert result.data["filename"] == "evil.jpg"
    assert (settings.storage.screenshot_path / "evil.jpg").read_bytes() == b"jpegdata"
    assert result.data["size"] == 8


def test_uploaded_screenshot_default_name(service, tmp_path):
    result = service.save_screenshot_upload(b"x", directory=tmp_path / "custom")
    assert re.fullmatch(r"screenshot_\d+\.jpg", result.data["filename"])
    assert (tmp_path / "custom" / result.data["filename"]).exists()


@pytest.mark.asyncio
async def test_streaming_through_fallback(service, transports):
    started = await service.start_streaming("camera1", resolution="640x480")
    assert started.success
    stream_id = started.data["streamId"]
    assert started.data["settings"]["resolution"] == "640x480"
    assert started.data["cameraId"] == "camera1"

    assert await wait_until(lambda: transports.fallback_channels)

    chunk = service.accept_stream_chunk(stream_id, b"segment", "1700000000000")
    assert chunk.success
    assert chunk.message == "Stream chunk processed"
    assert chunk.data["timestamp"] == "1700000000000"

    boxes = service.update_stream_boxes(stream_id, [{"x": 0.2, "y": 0.2, "width": 0.1, "height": 0.1}])
    assert boxes.data["boxes"] == 1

    info = service.stream_info(stream_id)
    assert info.data["transport"] == "fallback"
    assert info.data["chunksReceived"] == 1

    status = service.get_status()
    assert status.data["streamingIds"] == [stream_id]

    stopped = await service.stop_streaming(stream_id)
    assert stopped.success
    assert stopped.data["streamId"] == stream_id
    assert service.get_status().data["streamingCount"] == 0

    again = await service.stop_streaming(stream_id)
    assert again.data["endTime"] == stopped.data["endTime"]


@pytest.mark.asyncio
async def test_stream_errors_become_failed_results(service):
    result = service.accept_stream_chunk("stream_1_camera1", b"x")
    assert isinstance(result.error, SessionNotFound)

    stopped = await service.stop_streaming("stream_1_camera1")
    assert isinstance(stopped.error, SessionNotFound)

    unknown = await service.start_streaming("camera9")
    assert isinstance(unknown.error, SourceUnavailable)


def test_camera_feed_info(service):
    info = service.camera_feed_info("camera2")
    assert info.data["streamUrl"] == "/api/camera/camera2/live-feed"
    assert info.data["resolution"] == "1280x720"

    assert not service.camera_feed_info("camera9").success
