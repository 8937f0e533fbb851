"""Camera catalog entries."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List
from urllib.parse import urlparse


def mask_device(device: str) -> str:
    """Return a device selector with any URL password replaced by '****'."""
    try:
        password = urlparse(device).password
    except ValueError:
        return device
    if not password:
        return device
    return device.replace(f":{password}@", ":****@", 1)


class CameraState(Enum):
    """Whether a catalog camera is expected to deliver frames."""

    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class CameraInfo:
    """A logical camera known to the registry.

    ``device`` is the selector passed to the frame source adapter: an
    integer index ("0"), a device path, a stream URL, or ``testpattern``.
    """

    id: str
    name: str = ""
    device: str = "0"
    resolution: str = "1920x1080"
    state: CameraState = CameraState.ACTIVE

    @property
    def device_masked(self) -> str:
        """Device selector with any URL password masked for display."""
        return mask_device(self.device)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary (device masked)."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.state.value,
            "resolution": self.resolution,
            "device": self.device_masked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraInfo":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            device=str(data.get("device", "0")),
            resolution=data.get("resolution", "1920x1080"),
            state=CameraState(data.get("status", "active")),
        )


DEFAULT_CAMERAS: List[Dict[str, Any]] = [
    {
        "id": "camera1",
        "name": "Camera 1 (Main Entrance)",
        "device": "0",
        "resolution": "1920x1080",
        "status": "active",
    },
    {
        "id": "camera2",
        "name": "Camera 2 (Side View)",
        "device": "1",
        "resolution": "1280x720",
        "status": "active",
    },
    {
        "id": "camera3",
        "name": "Camera 3 (Rear View)",
        "device": "2",
        "resolution": "1920x1080",
        "status": "inactive",
    },
]
