"""Stream ingestion loop: source -> ring buffer.

Runs until cancelled. Connection failures are retried with exponential
backoff, then with a fixed idle delay; mid-stream failures reconnect
after a cooldown. Nothing short of cancellation ends the loop.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import AsyncIterator, Callable

import structlog

from radio_buffer import logging as console
from radio_buffer.ringbuffer import RingBuffer
from radio_buffer.source import StreamSource
from radio_buffer.telemetry import Telemetry, get_telemetry

log = structlog.get_logger()


class StreamIngester:
    """Feeds chunks from the source into the ring buffer."""

    def __init__(
        self,
        source: StreamSource,
        buffer: RingBuffer,
        is_stopped: Callable[[], bool],
        *,
        max_retries: int = 5,
        retry_base_delay: float = 1.0,
        idle_delay: float = 2.0,
        read_error_cooldown: float = 2.0,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.source = source
        self.buffer = buffer
        self._is_stopped = is_stopped
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.idle_delay = idle_delay
        self.read_error_cooldown = read_error_cooldown
        self.telemetry = telemetry or get_telemetry()

        self.bytes_received = 0
        self.chunks_discarded = 0
        self.connections = 0

    async def connect_with_retry(self) -> AsyncIterator[bytes] | None:
        """Connect, retrying with exponential backoff.

        Returns None after the last retry fails, once the idle delay has
        elapsed, so the caller can start a fresh round.
        """
        delay = self.retry_base_delay
        for attempt in range(self.max_retries + 1):
            try:
                stream = await self.source.connect()
                self.connections += 1
                return stream
            except Exception as e:
                if attempt == self.max_retries:
                    self.telemetry.capture_message(
                        "Stream connect failed",
                        "warning",
                        tags={"component": "stream", "event": "connect"},
                        extra={"error": str(e), "attempts": attempt + 1},
                    )
                    log.error("stream_connect_failed", error=str(e), attempts=attempt + 1)
                    console.stream_connect_failed(str(e))
                    break
                log.warning("stream_connect_retry", attempt=attempt + 1, delay=delay, error=str(e))
                await asyncio.sleep(delay)
                delay *= 2

        await asyncio.sleep(self.idle_delay)
        return None

    async def consume_stream(self, stream: AsyncIterator[bytes]) -> None:
        """Append every chunk to the buffer unless playback is stopped."""
        async with aclosing(stream):
            async for chunk in stream:
                if self._is_stopped():
                    self.chunks_discarded += 1
                    continue
                self.buffer.append(chunk)
                self.bytes_received += len(chunk)

    async def run(self) -> None:
        """Ingest forever."""
        log.info("ingest_starting", url=self.source.url)
        console.buffer_fill_starting()

        while True:
            stream = await self.connect_with_retry()
            if stream is None:
                continue

            try:
                await self.consume_stream(stream)
            except Exception as e:
                self.telemetry.capture_message(
                    "Stream read failed",
                    "warning",
                    tags={"component": "stream", "event": "read"},
                    extra={"error": str(e)},
                )
                log.error("stream_read_failed", error=str(e), error_type=type(e).__name__)
                console.stream_read_failed(str(e))
                await asyncio.sleep(self.read_error_cooldown)
