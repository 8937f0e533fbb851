"""Local filesystem storage for chunks, artifacts and stills.

Bytes are written opaquely; nothing here interprets media formats.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Union

from camstream.errors import StorageUnavailable, StorageWriteFailed

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class LocalStorage:
    """Filesystem-backed storage collaborator.

    Files are written to a temporary sibling and renamed into place so a
    reader never sees a half-written chunk.
    """

    def ensure_directory(self, path: PathLike) -> Path:
        """Create ``path`` (and parents) if absent.

        Raises:
            StorageUnavailable: if the directory cannot be created or is not writable
        """
        directory = Path(path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create directory {directory}: {e}")

        if not directory.is_dir() or not os.access(directory, os.W_OK):
            raise StorageUnavailable(f"Directory not writable: {directory}")
        return directory

    def write_file(self, path: PathLike, data: bytes) -> int:
        """Write ``data`` to ``path``.

        Returns:
            Number of bytes written

        Raises:
            StorageWriteFailed: on any I/O error
        """
        target = Path(path)
        partial = target.with_name(target.name + ".part")
        try:
            with open(partial, "wb") as f:
                f.write(data)
            os.replace(partial, target)
        except OSError as e:
            try:
                partial.unlink()
            except OSError:
                pass
            raise StorageWriteFailed(f"Failed to write {target}: {e}")

        logger.debug(f"Wrote {len(data)} bytes to {target}")
        return len(data)

    def assemble(self, parts: Iterable[PathLike], destination: PathLike) -> int:
        """Concatenate ``parts`` in order into ``destination``.

        Returns:
            Total bytes written

        Raises:
            StorageWriteFailed: if a part is missing or unreadable, or the
                destination cannot be written
        """
        target = Path(destination)
        partial = target.with_name(target.name + ".part")
        total = 0
        try:
            with open(partial, "wb") as out:
                for part in parts:
                    part_path = Path(part)
                    with open(part_path, "rb") as src:
                        shutil.copyfileobj(src, out)
                    total += part_path.stat().st_size
            os.replace(partial, target)
        except OSError as e:
            try:
                partial.unlink()
            except OSError:
                pass
            raise StorageWriteFailed(f"Failed to assemble {target}: {e}")

        logger.debug(f"Assembled {total} bytes into {target}")
        return total
