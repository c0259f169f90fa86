import asyncio
import logging

from .models import HTTPResponse

logger = logging.getLogger(__name__)

ALIVE_STATUSES = (200, 404)


class LivenessState:
    """
    Advisory belief about whether the backend is reachable.

    Owned by the server and shared with the proxy. Reads may be stale;
    every proxied request still handles its own connection failure.
    """

    def __init__(self, alive: bool = False):
        self._alive = alive

    @property
    def alive(self) -> bool:
        return self._alive

    def set(self, alive: bool) -> None:
        if alive != self._alive:
            logger.info(f"Backend marked {'available' if alive else 'unavailable'}")
        self._alive = alive


class HealthMonitor:
    """Probes the backend health endpoint with a fixed timeout."""

    def __init__(self, host: str, port: int, path: str = "/health",
                 timeout: float = 5):
        """
        Initialize the health monitor.

        Args:
            host: Backend host
            port: Backend port
            path: Health endpoint path
            timeout: Upper bound in seconds for the whole probe
        """
        self._host = host
        self._port = port
        self._path = path
        self._timeout = timeout

    async def probe(self) -> bool:
        """Return True when the backend answers the health path with 200 or 404."""
        try:
            status_code = await asyncio.wait_for(self._request_status(), self._timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Health probe to {self._host}:{self._port} timed out")
            return False
        except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as e:
            logger.debug(f"Health probe to {self._host}:{self._port} failed: {e}")
            return False

        logger.debug(f"Health probe to {self._host}:{self._port} returned {status_code}")
        return status_code in ALIVE_STATUSES

    async def _request_status(self) -> int:
        reader, writer = await asyncio.open_connection(self._host, self._port)
        try:
            writer.write((
                f"GET {self._path} HTTP/1.1\r\n"
                f"Host: {self._host}:{self._port}\r\n"
                "Connection: close\r\n"
                "\r\n"
            ).encode('latin-1'))
            await writer.drain()

            head = await reader.readuntil(b'\r\n\r\n')
            response = HTTPResponse.from_raw_head(head[:-4])
            if response is None:
                raise ValueError("Malformed health response")
            return response.status_code
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing health connection: {e}")
