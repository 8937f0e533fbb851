"""Session registry and the recording/streaming session managers."""

from camstream.sessions.recording import RecordingSessionManager
from camstream.sessions.registry import SessionRegistry
from camstream.sessions.streaming import StreamingSessionManager, StreamTicket, TransportMode

__all__ = [
    "RecordingSessionManager",
    "SessionRegistry",
    "StreamTicket",
    "StreamingSessionManager",
    "TransportMode",
]
