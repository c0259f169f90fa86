import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import unquote, urlsplit

from .files import FileStore

PREFLIGHT_METHOD = "OPTIONS"


class Route(enum.Enum):
    PREFLIGHT = "preflight"
    PROXY = "proxy"
    STATIC = "static"


@dataclass(frozen=True)
class StaticTarget:
    """Outcome of static path resolution. ``path`` is None when nothing can be served."""
    path: Optional[Path]
    fallback: bool = False

    @property
    def found(self) -> bool:
        return self.path is not None


class RequestRouter:
    """Decides whether a request is a preflight, a proxied call or a static file."""

    def __init__(self, backend_endpoints: Iterable[str], file_store: FileStore):
        """
        Initialize the router.

        Args:
            backend_endpoints: Path prefixes forwarded to the backend
            file_store: Static file accessor
        """
        self._backend_endpoints = tuple(backend_endpoints)
        self._file_store = file_store

    def should_proxy(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self._backend_endpoints)

    def classify(self, method: str, path: str) -> Route:
        """Classify a request by method and path."""
        if method.upper() == PREFLIGHT_METHOD:
            return Route.PREFLIGHT
        if self.should_proxy(urlsplit(path).path):
            return Route.PROXY
        return Route.STATIC

    def resolve_static(self, path: str) -> StaticTarget:
        """
        Resolve a URL path to a file, falling back to the index page.

        Paths that escape the static root are refused outright.
        """
        path = unquote(urlsplit(path).path) or '/'
        index_path = self._file_store.index_path

        if path in ('/', '/index.html'):
            candidate = index_path
        else:
            candidate = self._file_store.locate(path)
            if candidate is None:
                return StaticTarget(None)

        if self._file_store.is_file(candidate):
            return StaticTarget(candidate)

        # SPA fallback
        if self._file_store.is_file(index_path):
            return StaticTarget(index_path, fallback=True)
        return StaticTarget(None)
