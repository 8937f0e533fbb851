"""API route handlers for the capture service."""

from camstream.api.routes import camera, health

__all__ = ["camera", "health"]
