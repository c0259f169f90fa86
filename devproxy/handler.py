import asyncio
import logging
from typing import Dict, Optional

from .files import FileStore
from .models import HTTPRequest, HTTPResponse
from .proxy import BackendProxy
from .router import RequestRouter, Route
from .writer import ResponseWriter

logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b'\r\n\r\n'


class RequestHandler:
    """Handles processing of individual HTTP requests."""

    def __init__(self, router: RequestRouter, file_store: FileStore,
                 proxy: BackendProxy, cors_headers: Dict[str, str],
                 timeout: float = 30):
        """
        Initialize the request handler.

        Args:
            router: Classifies requests
            file_store: Serves static files
            proxy: Forwards backend requests
            cors_headers: Headers added to every response
            timeout: Seconds allowed for reading the inbound request
        """
        self._router = router
        self._file_store = file_store
        self._proxy = proxy
        self._cors_headers = dict(cors_headers)
        self._timeout = timeout

    async def handle_client(self, reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter) -> None:
        """
        Handle an individual client connection: one request, one response.

        Args:
            reader: Stream for the inbound request
            writer: Stream for the response
        """
        response_writer = ResponseWriter(writer)
        client_address = response_writer.peer

        try:
            try:
                request = await asyncio.wait_for(self._read_request(reader), self._timeout)
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    logger.warning(f"Client {client_address} closed mid-request")
                return
            except asyncio.TimeoutError:
                logger.warning(f"Timed out reading request from {client_address}")
                await response_writer.send(HTTPResponse.create_error(
                    408, "Request Timeout", self._cors_headers
                ))
                return

            if request is None:
                await response_writer.send(HTTPResponse.create_error(
                    400, "Bad Request", self._cors_headers
                ))
                return

            logger.info(f"{request.method} {request.path}")
            if request.method == 'HEAD':
                response_writer = ResponseWriter(writer, head_only=True)
            await self.dispatch(request, response_writer)

        except Exception as e:
            logger.error(f"Error handling client {client_address}: {e}")
            if not response_writer.started:
                try:
                    await response_writer.send(HTTPResponse.create_error(
                        500, "Internal Server Error", self._cors_headers
                    ))
                except OSError as send_error:
                    logger.debug(f"Could not send error response: {send_error}")
        finally:
            await response_writer.close()

    async def dispatch(self, request: HTTPRequest, writer: ResponseWriter) -> None:
        """Route a parsed request to the preflight, proxy or static branch."""
        route = self._router.classify(request.method, request.target)

        if route is Route.PREFLIGHT:
            await writer.send(HTTPResponse.create_empty(200, self._cors_headers))
        elif route is Route.PROXY:
            await self._proxy.forward(request, writer)
        else:
            await self.serve_static(request, writer)

    async def serve_static(self, request: HTTPRequest, writer: ResponseWriter) -> None:
        """Serve a file from the static root with SPA fallback."""
        target = self._router.resolve_static(request.target)
        if not target.found:
            await writer.send(HTTPResponse.create_error(404, "Not Found", self._cors_headers))
            return

        try:
            content = await self._file_store.read(target.path)
        except OSError as e:
            logger.error(f"Error serving file: {e}")
            await writer.send(HTTPResponse.create_error(
                500, "Internal Server Error", self._cors_headers
            ))
            return

        await writer.send(HTTPResponse.create(
            200, content, self._file_store.mime_type(target.path), self._cors_headers
        ))

    async def _read_request(self, reader: asyncio.StreamReader) -> Optional[HTTPRequest]:
        """Read the request head and the complete body. Returns None if malformed."""
        try:
            head = await reader.readuntil(HEADER_TERMINATOR)
        except asyncio.LimitOverrunError:
            return None

        request = HTTPRequest.from_raw_head(head[:-len(HEADER_TERMINATOR)])
        if request is None:
            return None

        transfer_encoding = request.header('Transfer-Encoding')
        content_length = request.header('Content-Length')
        try:
            if isinstance(transfer_encoding, str) and 'chunked' in transfer_encoding.lower():
                request.body = await self._read_chunked(reader)
            elif isinstance(content_length, str):
                length = int(content_length)
                if length < 0:
                    return None
                request.body = await reader.readexactly(length)
            elif content_length is not None:
                # Repeated Content-Length headers
                return None
        except (ValueError, asyncio.LimitOverrunError):
            return None

        return request

    @staticmethod
    async def _read_chunked(reader: asyncio.StreamReader) -> bytes:
        """Decode a chunked request body."""
        body = bytearray()
        while True:
            size_line = await reader.readuntil(b'\r\n')
            size = int(size_line.split(b';', 1)[0].strip(), 16)
            if size == 0:
                # Skip trailers up to the blank line
                while await reader.readuntil(b'\r\n') != b'\r\n':
                    pass
                return bytes(body)
            body.extend(await reader.readexactly(size))
            await reader.readexactly(2)
