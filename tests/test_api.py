import re
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import EmptySource, FakeTransports, TrackingSource

import camstream.service as service_module
from camstream.api.server import create_app
from camstream.service import CameraService


def make_client(monkeypatch, settings, source_factory=TrackingSource, transports=None):
    service = CameraService(
        settings=settings,
        transports=transports or FakeTransports(push_fails=True),
        source_opener=lambda config: source_factory(),
    )
    monkeypatch.setattr(service_module, "_service", service)
    return TestClient(create_app()), service


@pytest.fixture
def client(monkeypatch, settings):
    test_client, _ = make_client(monkeypatch, settings)
    with test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "camstream"}


def test_status_lists_cameras(client):
    body = client.get("/api/camera/status").json()

    assert body["success"] is True
    assert body["message"] == "Camera status retrieved successfully"
    assert [camera["id"] for camera in body["data"]["cameras"]] == ["camera1", "camera2"]
    assert body["data"]["recordingCount"] == 0


def test_recording_flow(client):
    started = client.post("/api/camera/start-recording", json={"cameraId": "camera2", "bitrate": 1000})
    assert started.status_code == 200
    session_id = started.json()["data"]["sessionId"]
    assert re.fullmatch(r"rec_\d+_camera2", session_id)
    assert started.json()["data"]["settings"]["bitrate"] == 1000

    chunk = client.post(
        "/api/camera/upload-recording-chunk",
        files={"chunk": ("chunk.webm", b"first", "video/webm")},
        data={"sessionId": session_id, "isLastChunk": "false"},
    )
    assert chunk.status_code == 200
    assert chunk.json()["data"]["isCompleted"] is False

    last = client.post(
        "/api/camera/upload-recording-chunk",
        files={"chunk": ("chunk.webm", b"-last", "video/webm")},
        data={"sessionId": session_id, "isLastChunk": "true"},
    )
    assert last.json()["message"] == "Recording completed and saved"
    assert Path(last.json()["data"]["artifact"]).read_bytes() == b"first-last"

    stopped = client.post("/api/camera/stop-recording", json={"sessionId": session_id})
    assert stopped.status_code == 200
    assert set(stopped.json()["data"]) >= {"startTime", "endTime", "duration", "durationSeconds"}

    late = client.post(
        "/api/camera/upload-recording-chunk",
        files={"chunk": ("chunk.webm", b"late", "video/webm")},
        data={"sessionId": session_id},
    )
    assert late.status_code == 404


def test_unknown_recording_is_404(client):
    response = client.post("/api/camera/stop-recording", json={"sessionId": "rec_999_x"})

    assert response.status_code == 404
    assert response.json()["success"] is False
    assert response.json()["data"]["error"] == "Session not found: rec_999_x"


def test_missing_chunk_file_is_400(client):
    response = client.post("/api/camera/upload-recording-chunk", data={"sessionId": "rec_1_camera1"})
    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "No chunk file provided"}


def test_bad_resolution_is_400(client):
    response = client.post("/api/camera/start-recording", json={"resolution": "wide"})
    assert response.status_code == 400


def test_unknown_camera_is_503(client):
    response = client.post("/api/camera/start-streaming", json={"cameraId": "camera9"})
    assert response.status_code == 503


def test_screenshot_is_captured_and_saved(client, settings):
    response = client.post(
        "/api/camera/screenshot",
        json={"cameraId": "camera1", "detections": [{"x": 0.1, "y": 0.1, "width": 0.3, "height": 0.3}]},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert re.fullmatch(r"screenshot_camera1_\d+\.jpg", data["filename"])
    assert Path(data["path"]).parent == settings.storage.screenshot_path
    assert Path(data["path"]).stat().st_size == data["size"]


def test_non_finite_detections_fail_validation(client):
    response = client.post(
        "/api/camera/screenshot",
        json={"cameraId": "camera1", "detections": [{"x": "inf", "y": 0.1, "width": 0.2, "height": 0.2}]},
    )
    assert response.status_code == 422

    started = client.post("/api/camera/start-streaming", json={"cameraId": "camera1"})
    stream_id = started.json()["data"]["streamId"]
    update = client.put(
        f"/api/camera/stream/{stream_id}/detections",
        json={"detections": [{"x": 0.1, "y": "nan", "width": 0.2, "height": 0.2}]},
    )
    assert update.status_code == 422
    client.post("/api/camera/stop-streaming", json={"streamId": stream_id})


def test_upload_screenshot(client, settings):
    response = client.post(
        "/api/camera/upload-screenshot",
        files={"image": ("shot.jpg", b"\xff\xd8jpeg", "image/jpeg")},
        data={"filename": "mine.jpg"},
    )

    assert response.status_code == 200
    assert (settings.storage.screenshot_path / "mine.jpg").read_bytes() == b"\xff\xd8jpeg"

    missing = client.post("/api/camera/upload-screenshot", data={"filename": "x.jpg"})
    assert missing.status_code == 400


def test_live_feed_returns_jpeg(client):
    response = client.get("/api/camera/camera1/live-feed")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert response.content[:2] == b"\xff\xd8"


def test_live_feed_without_frame_is_422(monkeypatch, settings):
    test_client, _ = make_client(monkeypatch, settings, source_factory=EmptySource)
    with test_client:
        response = test_client.get("/api/camera/camera1/live-feed")
    assert response.status_code == 422
    assert response.json()["success"] is False


def test_camera_stream_info(client):
    body = client.get("/api/camera/camera2/stream").json()
    assert body["data"]["streamUrl"] == "/api/camera/camera2/live-feed"
    assert body["data"]["frameRate"] == 30


def test_streaming_flow(client):
    started = client.post("/api/camera/start-streaming", json={"cameraId": "camera1"})
    assert started.status_code == 200
    data = started.json()["data"]
    stream_id = data["streamId"]
    assert re.fullmatch(r"stream_\d+_camera1", stream_id)
    assert data["httpEndpoint"] == "/api/camera/stream-chunk"
    assert data["streamUrl"].endswith(stream_id)

    chunk = client.post(
        "/api/camera/stream-chunk",
        files={"chunk": ("chunk.jpg", b"\xff\xd8frame", "image/jpeg")},
        data={"streamId": stream_id, "timestamp": "1700000000000"},
    )
    assert chunk.status_code == 200
    assert chunk.json()["data"]["processed"] is True

    boxes = client.put(
        f"/api/camera/stream/{stream_id}/detections",
        json={"detections": [{"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.4, "label": "person", "confidence": 0.9}]},
    )
    assert boxes.json()["data"]["boxes"] == 1

    info = client.get(f"/api/camera/stream/{stream_id}")
    assert info.json()["data"]["boxes"] == 1

    stopped = client.post("/api/camera/stop-streaming", json={"streamId": stream_id})
    assert stopped.status_code == 200
    assert stopped.json()["message"] == "Streaming stopped successfully"

    missing_chunk = client.post(
        "/api/camera/stream-chunk",
        files={"chunk": ("chunk.jpg", b"x", "image/jpeg")},
        data={"streamId": "stream_1_camera1"},
    )
    assert missing_chunk.status_code == 404
