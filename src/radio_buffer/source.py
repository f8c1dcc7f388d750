"""HTTP audio source.

connect() opens the stream and hands back an async iterator of raw byte
chunks. Iteration ends cleanly at end-of-stream and raises a SourceError
subclass on failure; the HTTP session is released either way. Callers
that may stop early should wrap the iterator in contextlib.aclosing().
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import aiohttp
import structlog

from radio_buffer.errors import SourceConnectError, SourceReadError, SourceTimeoutError

log = structlog.get_logger()


class StreamSource:
    """Opens connections to a remote audio stream."""

    def __init__(
        self,
        url: str,
        connect_timeout: float = 15.0,
        read_timeout: float = 15.0,
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

    async def connect(self) -> AsyncIterator[bytes]:
        """Open the stream.

        Returns:
            Async iterator yielding byte chunks as they arrive

        Raises:
            SourceConnectError: If the connection fails or the status is not 2xx
        """
        if not self.url:
            raise SourceConnectError("No stream URL configured")

        timeout = aiohttp.ClientTimeout(
            total=None,
            connect=self.connect_timeout,
            sock_connect=self.connect_timeout,
        )
        session = aiohttp.ClientSession(timeout=timeout)
        try:
            response = await session.get(self.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await session.close()
            raise SourceConnectError(f"Connection failed: {e!r}") from e
        except BaseException:
            # Cancelled mid-connect, e.g. by the rebuild probe's timeout
            await session.close()
            raise

        if not response.ok:
            status = response.status
            response.release()
            await session.close()
            raise SourceConnectError(f"Stream error: {status}")

        log.info("stream_connected", url=self.url, status=response.status)
        return self._iter_chunks(session, response)

    async def _iter_chunks(
        self,
        session: aiohttp.ClientSession,
        response: aiohttp.ClientResponse,
    ) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        response.content.readany(), timeout=self.read_timeout
                    )
                except asyncio.TimeoutError as e:
                    raise SourceTimeoutError("Stream read timed out") from e
                except aiohttp.ClientError as e:
                    raise SourceReadError(f"Read failed: {e!r}") from e

                if not chunk:
                    log.info("stream_ended", url=self.url)
                    return
                yield chunk
        finally:
            response.close()
            await session.close()
