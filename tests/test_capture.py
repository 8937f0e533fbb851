import re

import cv2
import numpy as np
import pytest

from conftest import BlackSource, EmptySource

from camstream.capture.engine import CaptureEngine, encode_jpeg
from camstream.capture.source import END_OF_STREAM, SourceConfig, TestPatternSource, open_source
from camstream.errors import NoFrameAvailable, SourceFailureReason, SourceUnavailable
from camstream.models.detection import DetectionBox


def test_capture_encodes_one_composited_frame():
    engine = CaptureEngine()
    source = BlackSource(640, 480)

    image = engine.capture(source, [DetectionBox(0.1, 0.1, 0.2, 0.2, 0.95, "person")])

    assert image.mime_type == "image/jpeg"
    assert (image.width, image.height) == (640, 480)
    assert image.data[:2] == b"\xff\xd8"

    decoded = cv2.imdecode(np.frombuffer(image.data, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (480, 640, 3)
    # Green edge survives JPEG compression approximately
    assert decoded[96, 64][1] > 100
    assert decoded[96, 128].max() < 40


def test_capture_without_frame_raises():
    with pytest.raises(NoFrameAvailable):
        CaptureEngine().capture(EmptySource())


def test_quality_changes_output_size():
    frame = TestPatternSource(320, 240).next_frame()
    low = encode_jpeg(frame.image, 0.1)
    high = encode_jpeg(frame.image, 1.0)
    assert len(low) < len(high)


def test_save_names_file_after_camera(tmp_path):
    engine = CaptureEngine()
    image = engine.capture(BlackSource(32, 24))

    path = engine.save(image, "camera2", tmp_path / "shots")

    assert re.fullmatch(r"screenshot_camera2_\d+\.jpg", path.name)
    assert path.read_bytes() == image.data


def test_test_pattern_is_deterministic_and_finite():
    first = TestPatternSource(64, 48, max_frames=2)
    second = TestPatternSource(64, 48, max_frames=2)

    a0, b0 = first.next_frame(), second.next_frame()
    a1 = first.next_frame()
    assert np.array_equal(a0.image, b0.image)
    assert not np.array_equal(a0.image, a1.image)
    assert a0.image[10, 0].tolist() == [255, 255, 255]
    assert a1.image[10, 1].tolist() == [255, 255, 255]
    assert first.next_frame() is END_OF_STREAM


def test_test_pattern_close_ends_stream():
    source = TestPatternSource(16, 16)
    source.close()
    source.close()
    assert source.closed
    assert source.next_frame() is END_OF_STREAM


def test_open_source_selects_test_pattern():
    with open_source(SourceConfig(device="testpattern:1", width=32, height=24)) as source:
        frame = source.next_frame()
        assert (frame.width, frame.height) == (32, 24)
        assert source.next_frame() is END_OF_STREAM
    assert source.closed


def test_open_source_missing_device_path(tmp_path):
    with pytest.raises(SourceUnavailable) as excinfo:
        open_source(SourceConfig(device=str(tmp_path / "video99")))
    assert excinfo.value.reason == SourceFailureReason.DEVICE_ABSENT


def test_open_source_bad_test_pattern_selector():
    with pytest.raises(SourceUnavailable):
        open_source(SourceConfig(device="testpattern:lots"))
