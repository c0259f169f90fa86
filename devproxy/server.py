import asyncio
import logging
import signal
import threading
from typing import Optional, Set

from .config import ProxyConfig
from .files import FileStore
from .handler import RequestHandler
from .health import HealthMonitor, LivenessState
from .mock import MockResponseGenerator
from .proxy import BackendProxy, BackendTransport
from .router import RequestRouter

logger = logging.getLogger(__name__)


class ProxyServer:
    """Development front door: static files, backend proxy and mock fallback."""

    def __init__(self, config: ProxyConfig = None,
                 health_monitor: HealthMonitor = None,
                 transport: BackendTransport = None,
                 liveness: LivenessState = None):
        """
        Initialize the proxy server.

        Args:
            config: Proxy configuration, defaults when omitted
            health_monitor: Substitute health checker
            transport: Substitute backend transport
            liveness: Shared liveness cell
        """
        self._config = config or ProxyConfig()
        self._liveness = liveness or LivenessState()
        self._health_monitor = health_monitor or HealthMonitor(
            self._config.backend_host,
            self._config.backend_port,
            self._config.health_path,
            self._config.health_timeout
        )

        cors_headers = self._config.cors_headers
        self._file_store = FileStore(
            self._config.static_root,
            self._config.mime_types,
            self._config.default_mime_type
        )
        self._router = RequestRouter(self._config.backend_endpoints, self._file_store)
        self._proxy = BackendProxy(
            self._config,
            self._liveness,
            self._health_monitor,
            MockResponseGenerator(cors_headers=cors_headers),
            transport
        )
        self._handler = RequestHandler(
            self._router, self._file_store, self._proxy, cors_headers, self._config.timeout
        )

        self._server: Optional[asyncio.AbstractServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._limiter: Optional[asyncio.Semaphore] = None
        self._active: Set[asyncio.Task] = set()
        self._ready = threading.Event()
        self._shutdown_requested = False

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._config.host

    @property
    def port(self) -> int:
        """Get the listening port, the bound one once started."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._config.port

    @property
    def liveness(self) -> LivenessState:
        return self._liveness

    @property
    def ready(self) -> threading.Event:
        """Set once the listener is accepting connections."""
        return self._ready

    def start(self) -> None:
        """Start the proxy server and block until it is shut down."""
        asyncio.run(self.serve_forever())

    async def serve_forever(self) -> None:
        """Probe the backend, listen, and serve until shutdown is requested."""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if self._config.max_connections:
            self._limiter = asyncio.Semaphore(self._config.max_connections)

        logger.info("Checking backend availability...")
        self._liveness.set(await self._health_monitor.probe())
        if self._liveness.alive:
            logger.info("Backend server is available")
        else:
            logger.warning("Backend server not responding - mock mode enabled")

        self._server = await asyncio.start_server(
            self._handle_connection,
            self._config.host,
            self._config.port,
            backlog=self._config.backlog
        )
        self._install_signal_handlers()

        logger.info(f"Proxy server running at http://{self.host}:{self.port}")
        logger.info(f"Proxying to backend: http://{self._config.backend_address}")
        logger.info(f"Serving static files from: {self._file_store.root}")
        self._ready.set()

        try:
            if not self._shutdown_requested:
                await self._stop_event.wait()
        finally:
            await self._close()

    def shutdown(self) -> None:
        """Shutdown the proxy server gracefully. Safe to call from any thread."""
        self._shutdown_requested = True
        if self._loop is None or self._stop_event is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._stop_event.set)
        except RuntimeError:
            # Loop already stopped
            pass

    async def _close(self) -> None:
        """Stop accepting connections and let in-flight requests finish."""
        logger.info("Shutting down proxy server...")
        self._ready.clear()
        if self._server is not None:
            self._server.close()
        if self._active:
            await asyncio.wait(set(self._active))
        if self._server is not None:
            await self._server.wait_closed()
        logger.info("Proxy server stopped")

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self._stop_event.set)
            except (NotImplementedError, RuntimeError):
                # add_signal_handler is unavailable on some platforms
                logger.debug(f"Signal handler for {sig!r} not installed")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._active.add(task)
        try:
            if self._limiter is None:
                await self._handler.handle_client(reader, writer)
            else:
                async with self._limiter:
                    await self._handler.handle_client(reader, writer)
        finally:
            self._active.discard(task)
