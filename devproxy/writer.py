import asyncio
import logging

from .models import HTTPResponse

logger = logging.getLogger(__name__)


class ResponseAlreadyStarted(RuntimeError):
    """Raised when a second response is written on the same connection."""


class ResponseWriter:
    """
    Wraps a client StreamWriter and guarantees at most one response per request.
    """

    def __init__(self, writer: asyncio.StreamWriter, head_only: bool = False):
        self._writer = writer
        self._head_only = head_only
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def peer(self):
        return self._writer.get_extra_info('peername')

    async def send(self, response: HTTPResponse) -> None:
        """Write a complete response."""
        await self.send_head(response)
        if not self._head_only:
            await self.send_chunk(response.body_bytes)

    async def send_head(self, response: HTTPResponse) -> None:
        """Write the status line and headers; the body follows via ``send_chunk``."""
        if self._started:
            raise ResponseAlreadyStarted(
                f"Response already started, dropping {response.status_code}"
            )
        self._started = True
        self._writer.write(response.head_bytes())
        await self._writer.drain()

    async def send_chunk(self, data: bytes) -> None:
        if data:
            self._writer.write(data)
            await self._writer.drain()

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing client connection: {e}")
