"""Process-wide session registry.

Owns the mapping from session id to Session record for both recordings
and streams, the camera catalog, and deferred purging of completed
sessions. Every mutation happens under one lock and is a
compare-and-set on the record status; callers never hold the lock while
doing I/O.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from camstream.errors import SessionConflict, SessionNotFound, SourceFailureReason, SourceUnavailable
from camstream.models.camera import CameraInfo
from camstream.models.session import Session, SessionKind, SessionSettings, SessionStatus

logger = logging.getLogger(__name__)

ID_PREFIXES = {
    SessionKind.RECORDING: "rec",
    SessionKind.STREAMING: "stream",
}


class SessionRegistry:
    """Guarded session table shared by the recording and streaming managers.

    Lifecycle:
        create()                      -> ACTIVE
        begin_stop()                  ACTIVE -> STOPPING (only one caller wins)
        complete()                    ACTIVE/STOPPING -> COMPLETED, stamps end_time once
        schedule_removal() + purge()  COMPLETED -> EXPIRED, record removed

    Recording chunk writes go reserve_sequence() -> finish_write() or
    release_sequence(). The completing caller calls seal_writes(), which
    waits for writes in flight before the artifact chunk list is fixed.

    Session ids are ``<prefix>_<ms>_<cameraId>`` where the millisecond stamp
    is forced strictly increasing, so ids never repeat within a process.
    """

    def __init__(
        self,
        cameras: Iterable[CameraInfo] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize registry.

        Args:
            cameras: Camera catalog sessions may reference
            clock: Monotonic clock used for durations and purge deadlines
        """
        self._cameras: Dict[str, CameraInfo] = {camera.id: camera for camera in cameras}
        self._clock = clock
        self._lock = threading.Lock()
        self._writes_done = threading.Condition(self._lock)
        self._sessions: Dict[str, Session] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._last_stamp_ms = 0

    # -------------------------------------------------------------------------
    # Cameras
    # -------------------------------------------------------------------------

    @property
    def cameras(self) -> List[CameraInfo]:
        return list(self._cameras.values())

    def get_camera(self, camera_id: str) -> CameraInfo:
        """Look up a catalog camera.

        Raises:
            SourceUnavailable: if the camera is not in the catalog
        """
        camera = self._cameras.get(camera_id)
        if camera is None:
            raise SourceUnavailable(
                f"Unknown camera: {camera_id}",
                reason=SourceFailureReason.DEVICE_ABSENT,
            )
        return camera

    # -------------------------------------------------------------------------
    # Creation and lookup
    # -------------------------------------------------------------------------

    def _next_stamp_ms(self) -> int:
        """Strictly increasing wall-clock milliseconds. Caller holds the lock."""
        stamp = max(int(time.time() * 1000), self._last_stamp_ms + 1)
        self._last_stamp_ms = stamp
        return stamp

    def create(
        self,
        kind: SessionKind,
        camera_id: str,
        settings: Optional[SessionSettings] = None,
        storage_path=None,
    ) -> Session:
        """Create and register a new ACTIVE session.

        Raises:
            SourceUnavailable: if camera_id is not in the catalog
            SessionConflict: if the generated id already exists
        """
        self.get_camera(camera_id)

        with self._lock:
            session_id = f"{ID_PREFIXES[kind]}_{self._next_stamp_ms()}_{camera_id}"
            if session_id in self._sessions:
                raise SessionConflict(f"Session id already in use: {session_id}")

            session = Session(
                id=session_id,
                kind=kind,
                camera_id=camera_id,
                started_monotonic=self._clock(),
                settings=settings or SessionSettings(),
                storage_path=storage_path,
            )
            self._sessions[session_id] = session

        logger.debug(f"Registered {kind.value} session {session_id}")
        return session

    def find(self, session_id: str) -> Optional[Session]:
        """Return the record for session_id, or None."""
        with self._lock:
            return self._sessions.get(session_id)

    def get(self, session_id: str, kind: Optional[SessionKind] = None) -> Session:
        """Return the record for session_id.

        Raises:
            SessionNotFound: if absent, or of a different kind
        """
        with self._lock:
            return self._get_locked(session_id, kind)

    def _get_locked(self, session_id: str, kind: Optional[SessionKind] = None) -> Session:
        session = self._sessions.get(session_id)
        if session is None or (kind is not None and session.kind != kind):
            raise SessionNotFound(session_id)
        return session

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def reserve_sequence(self, session_id: str, kind: Optional[SessionKind] = None) -> Tuple[Session, int]:
        """Assign the next chunk sequence number of an ACTIVE session.

        Returns:
            (session, sequence)

        Raises:
            SessionNotFound: if absent or no longer ACTIVE
        """
        with self._lock:
            session = self._get_locked(session_id, kind)
            if not session.is_active:
                raise SessionNotFound(
                    session_id,
                    f"Session {session_id} is {session.status.value} and no longer accepts chunks",
                )
            sequence = session.sequence_counter
            session.sequence_counter += 1
            session.pending_sequences.add(sequence)
            return session, sequence

    def finish_write(self, session_id: str, sequence: int) -> bool:
        """Mark a reserved sequence as stored.

        Returns:
            True if the chunk will be part of the artifact, False if the
            session was sealed (or removed) before the write finished
        """
        with self._writes_done:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.pending_sequences.discard(sequence)
            self._writes_done.notify_all()
            return not session.writes_sealed

    def release_sequence(self, session_id: str, sequence: int) -> bool:
        """Give back a reserved sequence number after a failed write.

        The counter is rolled back if the sequence is still the latest and
        the session is not sealed; otherwise the sequence is skipped when
        the artifact is assembled.

        Returns:
            True if the counter was rolled back
        """
        with self._writes_done:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.pending_sequences.discard(sequence)
            self._writes_done.notify_all()
            if not session.writes_sealed and session.sequence_counter == sequence + 1:
                session.sequence_counter = sequence
                return True
            session.skipped_sequences.add(sequence)
            return False

    def seal_writes(self, session_id: str, timeout: Optional[float] = None) -> List[int]:
        """Wait for in-flight chunk writes, then fix the artifact chunk list.

        Args:
            session_id: A session no longer ACTIVE, so no new sequences appear
            timeout: Maximum seconds to wait for pending writes

        Returns:
            Stored sequence numbers in order. Writes still pending after the
            timeout are left out and their callers are told so.

        Raises:
            SessionNotFound: if absent
        """
        with self._writes_done:
            session = self._get_locked(session_id)
            self._writes_done.wait_for(lambda: not session.pending_sequences, timeout)
            session.writes_sealed = True
            abandoned = len(session.pending_sequences)
            excluded = session.skipped_sequences | session.pending_sequences
            stored = [sequence for sequence in range(session.sequence_counter) if sequence not in excluded]

        if abandoned:
            logger.warning(f"Session {session_id} sealed with {abandoned} chunk write(s) still pending")
        return stored

    def begin_stop(self, session_id: str, kind: Optional[SessionKind] = None) -> bool:
        """ACTIVE -> STOPPING. Only the caller that observes ACTIVE gets True.

        Raises:
            SessionNotFound: if absent
        """
        with self._lock:
            session = self._get_locked(session_id, kind)
            if session.status != SessionStatus.ACTIVE:
                return False
            session.status = SessionStatus.STOPPING
            return True

    def complete(self, session_id: str, kind: Optional[SessionKind] = None) -> Tuple[Session, bool]:
        """ACTIVE/STOPPING -> COMPLETED, stamping end_time and duration.

        Returns:
            (session, transitioned). ``transitioned`` is False when the
            session was already terminal, in which case nothing changes.

        Raises:
            SessionNotFound: if absent
        """
        with self._lock:
            session = self._get_locked(session_id, kind)
            if session.is_terminal:
                return session, False
            session.status = SessionStatus.STOPPING
            session.mark_completed(self._clock())
            return session, True

    def set_artifact(self, session_id: str, artifact_path) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.artifact_path = artifact_path

    # -------------------------------------------------------------------------
    # Deferred cleanup
    # -------------------------------------------------------------------------

    def schedule_removal(self, session_id: str, delay_seconds: float) -> None:
        """Purge a completed session after ``delay_seconds``.

        Missing sessions are ignored.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session.purge_at = self._clock() + delay_seconds

            previous = self._timers.pop(session_id, None)
            if previous is not None:
                previous.cancel()

            timer = threading.Timer(delay_seconds, self.purge, args=(session_id,), kwargs={"force": True})
            timer.daemon = True
            timer.name = f"purge-{session_id}"
            self._timers[session_id] = timer
            timer.start()

        logger.debug(f"Session {session_id} will be purged in {delay_seconds}s")

    def purge(self, session_id: str, force: bool = False) -> bool:
        """Remove a completed session. Tolerates already-removed ids.

        Args:
            session_id: Session to remove
            force: Skip the purge_at deadline check

        Returns:
            True if a record was removed
        """
        with self._lock:
            self._timers.pop(session_id, None)
            session = self._sessions.get(session_id)
            if session is None:
                logger.debug(f"Purge of {session_id}: already removed")
                return False
            if session.status != SessionStatus.COMPLETED:
                return False
            if not force and (session.purge_at is None or self._clock() < session.purge_at):
                return False

            session.status = SessionStatus.EXPIRED
            del self._sessions[session_id]

        logger.debug(f"Purged session {session_id}")
        return True

    def sweep(self) -> List[str]:
        """Purge every completed session whose grace period has elapsed."""
        with self._lock:
            candidates = [
                session.id
                for session in self._sessions.values()
                if session.status == SessionStatus.COMPLETED and session.purge_at is not None
            ]
        return [session_id for session_id in candidates if self.purge(session_id)]

    def shutdown(self) -> None:
        """Cancel pending purge timers."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def active_ids(self, kind: SessionKind) -> List[str]:
        with self._lock:
            return [
                session.id
                for session in self._sessions.values()
                if session.kind == kind and session.is_active
            ]

    def status(self) -> Dict[str, Any]:
        """Aggregate view over ACTIVE sessions only."""
        with self._lock:
            recording_ids = []
            streaming_ids = []
            for session in self._sessions.values():
                if not session.is_active:
                    continue
                if session.kind == SessionKind.RECORDING:
                    recording_ids.append(session.id)
                else:
                    streaming_ids.append(session.id)

        return {
            "cameras": [camera.to_dict() for camera in self._cameras.values()],
            "recordingCount": len(recording_ids),
            "streamingCount": len(streaming_ids),
            "recordingIds": recording_ids,
            "streamingIds": streaming_ids,
            "isRecording": bool(recording_ids),
            "isStreaming": bool(streaming_ids),
            "activeRecordings": len(recording_ids),
            "activeStreams": len(streaming_ids),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
