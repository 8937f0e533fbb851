"""Recording session lifecycle.

A recording accepts ordered, opaque chunks (e.g. MediaRecorder output)
from its producer, persists each one as its own file, and on the final
chunk or an explicit stop concatenates them into a single artifact.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from camstream.errors import SessionNotFound, StorageWriteFailed
from camstream.models.session import ChunkReceipt, DurationInfo, Session, SessionKind, SessionSettings
from camstream.sessions.registry import SessionRegistry
from camstream.storage import LocalStorage

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 5.0
DEFAULT_WRITE_DRAIN_TIMEOUT_SECONDS = 10.0


class RecordingSessionManager:
    """Owns start / accept_chunk / stop for recordings.

    Chunk order is whatever order accept_chunk calls are processed in;
    callers that need strict append order serialize their calls per
    session. Sequence numbers start at 0.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        storage: Optional[LocalStorage] = None,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        chunk_extension: str = ".webm",
        write_drain_timeout_seconds: float = DEFAULT_WRITE_DRAIN_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.storage = storage or LocalStorage()
        self.grace_period_seconds = grace_period_seconds
        self.chunk_extension = chunk_extension
        self.write_drain_timeout_seconds = write_drain_timeout_seconds

    def chunk_path(self, session: Session, sequence: int) -> Path:
        return Path(session.storage_path) / f"{session.id}_chunk_{sequence:06d}{self.chunk_extension}"

    def artifact_path(self, session: Session) -> Path:
        return Path(session.storage_path) / f"recording_{session.id}{self.chunk_extension}"

    def start(
        self,
        camera_id: str,
        storage_path: Union[str, Path],
        settings: Optional[SessionSettings] = None,
    ) -> Session:
        """Start a new recording.

        Every call creates a distinct session, even for a camera that is
        already recording.

        Raises:
            SourceUnavailable: unknown camera
            StorageUnavailable: storage_path cannot be created
        """
        directory = self.storage.ensure_directory(storage_path)
        session = self.registry.create(
            SessionKind.RECORDING,
            camera_id,
            settings=settings,
            storage_path=directory,
        )
        logger.info(f"Starting recording session {session.id} from camera {camera_id} to path: {directory}")
        return session

    def accept_chunk(self, session_id: str, payload: bytes, is_final: bool = False) -> ChunkReceipt:
        """Persist one chunk.

        Raises:
            SessionNotFound: session absent or not ACTIVE, or stopped before
                this chunk's write finished (the chunk is not in the artifact)
            StorageWriteFailed: write failed; session stays ACTIVE and the
                sequence number is released for a retry
        """
        session, sequence = self.registry.reserve_sequence(session_id, SessionKind.RECORDING)
        path = self.chunk_path(session, sequence)

        try:
            size = self.storage.write_file(path, payload)
        except StorageWriteFailed:
            self.registry.release_sequence(session_id, sequence)
            logger.warning(f"Chunk {sequence} of {session_id} failed to write; session stays active")
            raise

        if not self.registry.finish_write(session_id, sequence):
            logger.warning(f"Chunk {sequence} of {session_id} arrived after the recording was sealed")
            raise SessionNotFound(
                session_id,
                f"Session {session_id} was stopped before chunk {sequence} was stored",
            )

        logger.debug(f"Stored chunk {sequence} of {session_id} ({size} bytes)")

        if not is_final:
            return ChunkReceipt(
                session_id=session_id,
                sequence=sequence,
                path=path,
                size=size,
                is_final=False,
            )

        artifact = self._finish(session_id)
        logger.info(f"Recording session {session_id} completed")
        return ChunkReceipt(
            session_id=session_id,
            sequence=sequence,
            path=path,
            size=size,
            is_final=True,
            completed=True,
            artifact_path=artifact,
        )

    def stop(self, session_id: str) -> DurationInfo:
        """Stop a recording. Idempotent.

        Raises:
            SessionNotFound: session absent
        """
        self._finish(session_id)
        session = self.registry.get(session_id, SessionKind.RECORDING)
        info = session.duration_info()
        logger.info(f"Stopping recording session: {session_id}, duration: {info.duration}")
        return info

    def chunk_paths(self, session: Session, sequences: Iterable[int]) -> List[Path]:
        return [self.chunk_path(session, sequence) for sequence in sequences]

    def _finish(self, session_id: str) -> Optional[Path]:
        """Complete the session once, assemble its artifact, schedule purge.

        Only the caller that performs the COMPLETED transition assembles,
        after chunk writes already in flight have finished.
        """
        session, transitioned = self.registry.complete(session_id, SessionKind.RECORDING)
        if not transitioned:
            return session.artifact_path

        sequences = self.registry.seal_writes(session_id, self.write_drain_timeout_seconds)

        artifact = None
        if sequences:
            artifact = self.artifact_path(session)
            try:
                self.storage.assemble(self.chunk_paths(session, sequences), artifact)
                self.registry.set_artifact(session_id, artifact)
            except StorageWriteFailed as e:
                # Chunks remain on disk individually
                logger.error(f"Failed to assemble recording {session_id}: {e}")
                artifact = None

        self.registry.schedule_removal(session_id, self.grace_period_seconds)
        return artifact
