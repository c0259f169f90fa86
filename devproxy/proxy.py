import asyncio
import enum
import logging
from typing import AsyncIterator, Dict, Optional

from .config import ProxyConfig
from .health import HealthMonitor, LivenessState
from .mock import MockResponseGenerator
from .models import (
    HOP_BY_HOP_HEADERS, HeaderValue, HTTPRequest, HTTPResponse, merge_headers
)
from .writer import ResponseWriter

logger = logging.getLogger(__name__)

# Errors that mean the backend could not be reached or spoke garbage
CONNECTION_ERRORS = (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError)


class ProxyState(enum.Enum):
    PROBING = "probing"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DONE = "done"
    MOCKED = "mocked"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def strip_hop_by_hop(headers: Dict[str, HeaderValue],
                     extra: tuple = ()) -> Dict[str, HeaderValue]:
    """Remove connection-scoped headers, including any listed in ``Connection``."""
    drop = set(HOP_BY_HOP_HEADERS) | {name.lower() for name in extra}
    for key, value in headers.items():
        if key.lower() == 'connection':
            values = value if isinstance(value, list) else [value]
            drop.update(token.strip().lower() for item in values for token in item.split(','))
    return {k: v for k, v in headers.items() if k.lower() not in drop}


async def close_stream(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f"Error closing backend connection: {e}")


class BackendExchange:
    """A backend response whose head has been read and whose body is still on the wire."""

    def __init__(self, response: HTTPResponse, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter, has_body: bool = True):
        self.response = response
        self._reader = reader
        self._writer = writer
        self._has_body = has_body

    async def iter_body(self, chunk_size: int, timeout: float) -> AsyncIterator[bytes]:
        """Yield raw body bytes as they arrive, each read bounded by ``timeout``."""
        if not self._has_body:
            return

        remaining: Optional[int] = None
        content_length = self.response.header('Content-Length')
        if isinstance(content_length, list):
            content_length = content_length[0]
        if content_length is not None and self.response.header('Transfer-Encoding') is None:
            remaining = int(content_length)

        while remaining is None or remaining > 0:
            size = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = await asyncio.wait_for(self._reader.read(size), timeout)
            if not chunk:
                if remaining:
                    raise asyncio.IncompleteReadError(b'', remaining)
                break
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk

    async def close(self) -> None:
        await close_stream(self._writer)


class BackendTransport:
    """Opens HTTP/1.1 exchanges with the backend over asyncio streams."""

    def __init__(self, host: str, port: int):
        self._host = host
        self._port = port

    async def open(self, request: HTTPRequest) -> BackendExchange:
        """Send the request and read the response head."""
        reader, writer = await asyncio.open_connection(self._host, self._port)
        try:
            writer.write(request.to_bytes())
            await writer.drain()

            raw_head = await reader.readuntil(b'\r\n\r\n')
            response = HTTPResponse.from_raw_head(raw_head[:-4])
            if response is None:
                raise ValueError("Malformed response from backend")
        except asyncio.CancelledError:
            writer.close()
            raise
        except Exception:
            await close_stream(writer)
            raise

        has_body = request.method != 'HEAD' and response.status_code not in (204, 304)
        return BackendExchange(response, reader, writer, has_body)


class BackendProxy:
    """
    Forwards requests to the backend, substituting mock responses for the
    tool download endpoints when the backend is down or failing.
    """

    def __init__(self, config: ProxyConfig, liveness: LivenessState,
                 health_monitor: HealthMonitor, mock_generator: MockResponseGenerator,
                 transport: BackendTransport = None):
        """
        Initialize the backend proxy.

        Args:
            config: Proxy configuration
            liveness: Shared advisory backend liveness state
            health_monitor: Anything with an async ``probe() -> bool``
            mock_generator: Builds substitute responses
            transport: Anything with an async ``open(...) -> BackendExchange``
        """
        self._config = config
        self._liveness = liveness
        self._health_monitor = health_monitor
        self._mock = mock_generator
        self._transport = transport or BackendTransport(config.backend_host, config.backend_port)
        self._cors_headers = config.cors_headers

    def is_sensitive(self, request: HTTPRequest) -> bool:
        return self._config.sensitive_marker in request.target

    def build_backend_request(self, request: HTTPRequest) -> HTTPRequest:
        """Copy the inbound request with Host and Content-Length rewritten."""
        # The body is already buffered, so chunking and 100-continue no longer apply
        headers = strip_hop_by_hop(request.headers, extra=('transfer-encoding', 'expect'))
        headers = merge_headers(headers, {
            'Host': self._config.backend_address,
            'Content-Length': str(len(request.body)),
            'Connection': 'close'
        })
        return HTTPRequest(
            method=request.method,
            target=request.target,
            protocol='HTTP/1.1',
            headers=headers,
            body=request.body
        )

    async def forward(self, request: HTTPRequest, writer: ResponseWriter) -> ProxyState:
        """Proxy one buffered request and write exactly one response."""
        sensitive = self.is_sensitive(request)
        logger.info(f"Proxying {request.method} {request.target}")

        if sensitive and not self._liveness.alive:
            logger.debug(f"{request.target}: {ProxyState.PROBING.value}")
            alive = await self._health_monitor.probe()
            self._liveness.set(alive)
            if not alive:
                logger.warning("Backend unavailable, using mock response")
                await writer.send(self._mock.build_response(request.body))
                return ProxyState.MOCKED

        logger.debug(f"{request.target}: {ProxyState.CONNECTING.value}")
        try:
            exchange = await asyncio.wait_for(
                self._transport.open(self.build_backend_request(request)),
                self._config.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Backend timeout")
            if sensitive:
                await writer.send(self._mock.build_response(request.body))
                return ProxyState.MOCKED
            await writer.send(HTTPResponse.create_json(
                504, {"error": "Backend timeout"}, self._cors_headers
            ))
            return ProxyState.TIMED_OUT
        except CONNECTION_ERRORS as e:
            logger.error(f"Proxy error: {e}")
            self._liveness.set(False)
            if sensitive:
                await writer.send(self._mock.build_response(request.body))
                return ProxyState.MOCKED
            await writer.send(HTTPResponse.create_json(
                502, {"error": "Backend connection failed", "details": str(e)},
                self._cors_headers
            ))
            return ProxyState.FAILED

        self._liveness.set(True)
        try:
            if exchange.response.status_code >= 500 and sensitive:
                logger.warning("Backend error, switching to mock mode")
                await writer.send(self._mock.build_response(request.body))
                return ProxyState.MOCKED
            return await self._stream(exchange, writer)
        finally:
            await exchange.close()

    async def _stream(self, exchange: BackendExchange, writer: ResponseWriter) -> ProxyState:
        """Send the backend head with CORS headers merged in, then pipe the body."""
        backend = exchange.response
        logger.debug(f"Backend answered {backend.status_code}: {ProxyState.STREAMING.value}")
        headers = merge_headers(strip_hop_by_hop(backend.headers), self._cors_headers)
        headers['Connection'] = 'close'
        await writer.send_head(HTTPResponse(
            status_code=backend.status_code,
            status_message=backend.status_message,
            headers=headers
        ))

        try:
            async for chunk in exchange.iter_body(self._config.buffer_size, self._config.timeout):
                await writer.send_chunk(chunk)
        except asyncio.TimeoutError:
            logger.error("Backend timeout while streaming response")
            return ProxyState.TIMED_OUT
        except (OSError, asyncio.IncompleteReadError, ValueError) as e:
            logger.error(f"Error streaming backend response: {e}")
            return ProxyState.FAILED
        return ProxyState.DONE
