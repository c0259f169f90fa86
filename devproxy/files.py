import asyncio
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

INDEX_FILE = "index.html"


class FileStore:
    """Resolves URL paths to files under a static root directory."""

    def __init__(self, root: str, mime_types: Mapping[str, str],
                 default_mime_type: str = "text/plain"):
        self._root = Path(root).resolve()
        self._mime_types = {ext.lower(): mime for ext, mime in mime_types.items()}
        self._default_mime_type = default_mime_type

    @property
    def root(self) -> Path:
        return self._root

    @property
    def index_path(self) -> Path:
        return self._root / INDEX_FILE

    def contains(self, path: Path) -> bool:
        """Check that ``path`` stays inside the static root once symlinks are resolved."""
        try:
            path.resolve().relative_to(self._root)
        except ValueError:
            return False
        return True

    def locate(self, relative: str) -> Optional[Path]:
        """
        Map a decoded URL path onto the static root.

        Returns None when the path escapes the root.
        """
        parts = [part for part in relative.replace('\\', '/').split('/') if part]
        candidate = self._root.joinpath(*parts) if parts else self._root
        if '..' in parts or not self.contains(candidate):
            logger.warning(f"Refusing path outside static root: {relative}")
            return None
        return candidate

    @staticmethod
    def is_file(path: Path) -> bool:
        return path.is_file()

    def mime_type(self, path: Path) -> str:
        """Look up the MIME type from the file extension."""
        return self._mime_types.get(path.suffix.lower(), self._default_mime_type)

    async def read(self, path: Path) -> bytes:
        """Read file content without blocking the event loop."""
        return await asyncio.to_thread(path.read_bytes)

    def __repr__(self) -> str:
        return f"FileStore(root={os.fspath(self._root)!r})"
