"""Detection overlay compositing.

``composite()`` is a pure function: it copies the input frame and draws
each detection box (outline plus "label (NN%)" caption) in input order.
Later boxes may overlap earlier ones.
"""

import math
from typing import Iterable, Tuple

import cv2
import numpy as np

from camstream.capture.source import RawFrame
from camstream.models.detection import DEFAULT_BOX_COLOR, DetectionBox

LINE_WIDTH = 2
LABEL_OFFSET = 5
FONT = cv2.FONT_HERSHEY_SIMPLEX
FONT_SCALE = 0.5
FONT_THICKNESS = 1

BGR = Tuple[int, int, int]

NAMED_COLORS = {
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "red": (0, 0, 255),
    "green": (0, 128, 0),
    "lime": (0, 255, 0),
    "blue": (255, 0, 0),
    "yellow": (0, 255, 255),
    "cyan": (255, 255, 0),
    "magenta": (255, 0, 255),
    "orange": (0, 165, 255),
}


def parse_color(color: str) -> BGR:
    """Convert a CSS colour ('#RGB', '#RRGGBB' or a basic name) to BGR.

    Unparseable values fall back to the default box colour.
    """
    value = (color or "").strip().lower()
    if value in NAMED_COLORS:
        return NAMED_COLORS[value]

    hex_value = value.lstrip("#")
    if len(hex_value) == 3:
        hex_value = "".join(c * 2 for c in hex_value)
    if len(hex_value) != 6:
        return parse_color(DEFAULT_BOX_COLOR)
    try:
        red = int(hex_value[0:2], 16)
        green = int(hex_value[2:4], 16)
        blue = int(hex_value[4:6], 16)
    except ValueError:
        return parse_color(DEFAULT_BOX_COLOR)
    return blue, green, red


def _to_pixel(fraction: float, size: int) -> int:
    """Map a normalized coordinate onto [0, size - 1]. NaN maps to 0."""
    if math.isnan(fraction):
        return 0
    fraction = min(max(fraction, 0.0), 1.0)
    return min(int(round(fraction * size)), size - 1)


def box_to_pixels(box: DetectionBox, width: int, height: int) -> Tuple[int, int, int, int]:
    """Scale a normalized box to clamped pixel corners (x1, y1, x2, y2).

    Out-of-range and non-finite values are clamped to the frame.
    """
    x1, x2 = sorted((_to_pixel(box.x, width), _to_pixel(box.x + box.width, width)))
    y1, y2 = sorted((_to_pixel(box.y, height), _to_pixel(box.y + box.height, height)))
    return x1, y1, x2, y2


def _draw_box(image: np.ndarray, box: DetectionBox) -> None:
    height, width = image.shape[:2]
    x1, y1, x2, y2 = box_to_pixels(box, width, height)
    color = parse_color(box.color)

    cv2.rectangle(image, (x1, y1), (x2, y2), color, LINE_WIDTH)

    # Caption sits just above the top-left corner, pushed down if it
    # would leave the frame
    (_, text_height), _ = cv2.getTextSize(box.caption, FONT, FONT_SCALE, FONT_THICKNESS)
    text_y = max(y1 - LABEL_OFFSET, text_height)
    cv2.putText(image, box.caption, (x1, text_y), FONT, FONT_SCALE, color, FONT_THICKNESS)


def composite(frame: RawFrame, boxes: Iterable[DetectionBox]) -> RawFrame:
    """Draw detection boxes onto a copy of ``frame``.

    Args:
        frame: Source frame (left untouched)
        boxes: Boxes to draw, in drawing order

    Returns:
        New RawFrame carrying the composited image and the source metadata
    """
    boxes = list(boxes)
    if not boxes:
        return frame

    image = frame.image.copy()
    for box in boxes:
        _draw_box(image, box)

    return RawFrame(image=image, timestamp=frame.timestamp, index=frame.index)
