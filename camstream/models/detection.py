"""Detection box model consumed by the overlay compositor."""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

DEFAULT_BOX_COLOR = "#00FF00"


def _finite(data: Dict[str, Any], *keys: str, default: float = 0.0) -> float:
    """First present key of ``data`` as a finite float.

    Raises:
        ValueError: if the value is not a number or is NaN/infinite
    """
    value = default
    for key in keys:
        if key in data:
            value = data[key]
            break
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"Detection box '{keys[0]}' must be finite, got {value!r}")
    return number


@dataclass(frozen=True)
class DetectionBox:
    """Normalized detection rectangle supplied by an external detector.

    Coordinates and size are fractions of the frame dimensions. Values
    outside [0, 1] are tolerated here and clamped when drawn.
    """

    x: float
    y: float
    width: float
    height: float
    confidence: float = 0.0
    label: str = ""
    color: str = DEFAULT_BOX_COLOR
    id: Optional[str] = None

    @property
    def caption(self) -> str:
        """Label drawn above the box, e.g. 'person (95%)'."""
        confidence = self.confidence if math.isfinite(self.confidence) else 0.0
        return f"{self.label} ({round(confidence * 100)}%)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "confidence": self.confidence,
            "label": self.label,
            "color": self.color,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionBox":
        """Create from dictionary. Accepts 'w'/'h' as short keys.

        Raises:
            ValueError: on a non-numeric or non-finite number
        """
        return cls(
            x=_finite(data, "x"),
            y=_finite(data, "y"),
            width=_finite(data, "width", "w"),
            height=_finite(data, "height", "h"),
            confidence=_finite(data, "confidence"),
            label=str(data.get("label", "")),
            color=str(data.get("color") or DEFAULT_BOX_COLOR),
            id=data.get("id"),
        )


def boxes_from_dicts(items: Optional[Iterable[Union[DetectionBox, Dict[str, Any]]]]) -> List[DetectionBox]:
    """Convert request JSON items to boxes. Existing boxes pass through."""
    return [item if isinstance(item, DetectionBox) else DetectionBox.from_dict(item) for item in items or []]
