"""Daily buffer rebuild.

Once a day at the configured hour the buffer is drained and refilled
from the live stream: pause playback, clear, wait for the buffer to
reach its target (bounded by a refill timeout), resume. A rebuild only
starts if the source is currently delivering data, so an outage never
costs us a healthy buffer. At most one rebuild runs at a time.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

import structlog

from radio_buffer import logging as console
from radio_buffer.config import RebuildConfig
from radio_buffer.errors import SourceReadError, SourceTimeoutError
from radio_buffer.ringbuffer import RingBuffer
from radio_buffer.source import StreamSource
from radio_buffer.telemetry import Telemetry, get_telemetry, report_task_failure

if TYPE_CHECKING:
    from radio_buffer.playback import PacedConsumer

log = structlog.get_logger()


def local_now() -> datetime:
    """Current local time, timezone-aware."""
    return datetime.now().astimezone()


def next_rebuild_time(hour: int, now: datetime | None = None) -> datetime:
    """Next occurrence of hour:00:00 strictly after now."""
    now = now or local_now()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


class RebuildScheduler:
    """Runs the daily rebuild and on-demand rebuilds, one at a time."""

    def __init__(
        self,
        buffer: RingBuffer,
        playback: PacedConsumer,
        source: StreamSource,
        config: RebuildConfig | None = None,
        *,
        telemetry: Telemetry | None = None,
        clock: Callable[[], datetime] = local_now,
        on_task_failure: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.buffer = buffer
        self.playback = playback
        self.source = source
        self.config = config or RebuildConfig()
        self.telemetry = telemetry or get_telemetry()
        self._clock = clock
        self._on_task_failure = on_task_failure

        self._locked = False
        self._loop_task: asyncio.Task | None = None
        self._rebuild_task: asyncio.Task | None = None

        self.last_result: str | None = None  # "filled", "timeout" or "skipped"
        self.last_finished: datetime | None = None

    @property
    def is_rebuilding(self) -> bool:
        """True while the rebuild lock is held."""
        return self._locked

    def next_rebuild(self) -> datetime:
        """When the next scheduled rebuild fires."""
        return next_rebuild_time(self.config.hour, self._clock())

    def rebuild_now(self) -> bool:
        """Start a rebuild in the background.

        Returns:
            True if a rebuild was started, False if one is already running
        """
        # Test-and-set with no await in between
        if self._locked:
            log.info("rebuild_already_running")
            return False
        self._locked = True

        self._rebuild_task = asyncio.create_task(self._run_rebuild(), name="rebuild")
        self._rebuild_task.add_done_callback(
            report_task_failure(self.telemetry, "rebuild", self._on_task_failure)
        )
        return True

    async def _run_rebuild(self) -> None:
        try:
            self.last_result = await self.perform_rebuild()
            self.last_finished = self._clock()
        finally:
            self._locked = False
            self._rebuild_task = None

    async def probe_source(self) -> bytes:
        """Require the source to deliver one chunk within probe_timeout.

        Raises:
            SourceError: If the source is unreachable, empty or too slow
        """

        async def first_chunk() -> bytes:
            stream = await self.source.connect()
            async with aclosing(stream):
                async for chunk in stream:
                    return chunk
            raise SourceReadError("Stream produced no data during availability check")

        try:
            return await asyncio.wait_for(first_chunk(), timeout=self.config.probe_timeout)
        except asyncio.TimeoutError as e:
            raise SourceTimeoutError("Stream availability check timed out") from e

    async def perform_rebuild(self) -> str:
        """Probe, pause, clear, refill, resume.

        Returns:
            "skipped" if the source was unavailable, "timeout" if the refill
            timed out (playback resumes with a partial buffer), else "filled"
        """
        log.info("rebuild_starting", hour=self.config.hour)
        console.rebuild_starting()
        self.telemetry.add_breadcrumb("rebuild", "Rebuild starting")

        try:
            await self.probe_source()
        except Exception as e:
            log.info("rebuild_skipped", reason="stream unavailable", error=str(e))
            console.rebuild_skipped(str(e))
            return "skipped"

        self.playback.pause()
        try:
            self.buffer.clear()
            log.info("rebuild_refilling", target=self.buffer.target_size)
            console.rebuild_refilling()
            try:
                await asyncio.wait_for(
                    self.buffer.wait_for_target(), timeout=self.config.refill_timeout
                )
                result = "filled"
                log.info("rebuild_complete")
            except asyncio.TimeoutError:
                result = "timeout"
                log.warning("rebuild_timeout", buffered=self.buffer.size())
        finally:
            # resume() only acts on a paused consumer
            self.playback.resume()

        console.rebuild_finished(result)
        self.telemetry.add_breadcrumb("rebuild", "Rebuild finished", data={"result": result})
        return result

    async def _loop(self) -> None:
        while True:
            at = self.next_rebuild()
            delay = max(0.0, (at - self._clock()).total_seconds())
            log.info("rebuild_scheduled", at=at.isoformat(), hours=round(delay / 3600))
            console.rebuild_scheduled(at, delay)
            await asyncio.sleep(delay)
            self.rebuild_now()

    def start(self) -> None:
        """Start the scheduling loop. No-op if already running."""
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._loop(), name="rebuild-scheduler")
        self._loop_task.add_done_callback(
            report_task_failure(self.telemetry, "scheduler", self._on_task_failure)
        )

    async def stop(self) -> None:
        """Cancel the loop and any in-flight rebuild; always releases the lock."""
        for task in (self._loop_task, self._rebuild_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.debug("scheduler_task_error_on_stop", task=task.get_name(), error=str(e))
        self._loop_task = None
        self._rebuild_task = None
        self._locked = False
