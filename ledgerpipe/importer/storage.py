"""Read-only blob storage for uploaded statement files.

Uploads land under a single root directory; the orchestrator fetches them
by relative path. Paths are resolved against the root and may not escape it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ledgerpipe.errors import StorageError

logger = logging.getLogger(__name__)


class BlobStore:
    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return candidate

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except StorageError:
            return False

    def fetch(self, path: str) -> bytes:
        """Return the bytes stored at path.

        Raises:
            StorageError: If the path is outside the root or cannot be read.
        """
        target = self._resolve(path)
        try:
            data = target.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"File not found in storage: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path} from storage: {e}") from e
        logger.debug("Fetched %s (%d bytes) from storage", path, len(data))
        return data
