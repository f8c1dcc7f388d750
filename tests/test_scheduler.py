"""Tests for the daily rebuild scheduler."""

import asyncio
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from fakes import FakeSource

from radio_buffer.config import RebuildConfig
from radio_buffer.errors import SourceConnectError
from radio_buffer.playback import PacedConsumer
from radio_buffer.ringbuffer import RingBuffer
from radio_buffer.scheduler import RebuildScheduler, next_rebuild_time


async def wait_until(condition, timeout=2.0, interval=0.005):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not condition():
        if asyncio.get_event_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def small_buffer() -> RingBuffer:
    buf = RingBuffer(capacity=100, bytes_per_second=1000, poll_interval=0.005)
    yield buf
    buf.close()


@pytest.fixture
def playback() -> MagicMock:
    return MagicMock(spec=PacedConsumer)


def make_scheduler(buffer, playback, source, telemetry, **config) -> RebuildScheduler:
    config.setdefault("probe_timeout", 0.05)
    config.setdefault("refill_timeout", 0.1)
    return RebuildScheduler(
        buffer, playback, source, RebuildConfig(**config), telemetry=telemetry
    )


class TestNextRebuildTime:
    def test_later_today(self):
        now = datetime(2026, 3, 10, 1, 30)
        assert next_rebuild_time(4, now) == datetime(2026, 3, 10, 4, 0)

    def test_tomorrow_when_hour_passed(self):
        now = datetime(2026, 3, 10, 5, 0)
        assert next_rebuild_time(4, now) == datetime(2026, 3, 11, 4, 0)

    def test_exactly_at_hour_moves_to_tomorrow(self):
        """The result is strictly after now."""
        now = datetime(2026, 3, 10, 4, 0, 0)
        assert next_rebuild_time(4, now) == datetime(2026, 3, 11, 4, 0)

    def test_month_rollover(self):
        now = datetime(2026, 1, 31, 23, 0)
        assert next_rebuild_time(4, now) == datetime(2026, 2, 1, 4, 0)

    def test_scheduler_uses_its_clock(self, small_buffer, playback, telemetry):
        scheduler = RebuildScheduler(
            small_buffer,
            playback,
            FakeSource(),
            RebuildConfig(hour=2),
            telemetry=telemetry,
            clock=lambda: datetime(2026, 3, 10, 12, 0),
        )
        assert scheduler.next_rebuild() == datetime(2026, 3, 11, 2, 0)


class TestPerformRebuild:
    @pytest.mark.asyncio
    async def test_rebuild_fills_buffer(self, small_buffer, playback, telemetry):
        """Pause, clear, refill to target, resume."""
        small_buffer.append(b"old" * 10)
        scheduler = make_scheduler(small_buffer, playback, FakeSource([b"live"]), telemetry)

        async def refill():
            await wait_until(lambda: playback.pause.called)
            small_buffer.append(bytes(100))

        filler = asyncio.create_task(refill())
        result = await scheduler.perform_rebuild()
        await filler

        assert result == "filled"
        playback.pause.assert_called_once()
        playback.resume.assert_called_once()
        assert small_buffer.consume(100) == bytes(100)

    @pytest.mark.asyncio
    async def test_unreachable_source_skips_rebuild(self, small_buffer, playback, telemetry):
        """A failed availability check leaves buffer and playback untouched."""
        small_buffer.append(b"keep me")
        source = FakeSource(SourceConnectError("Stream error: 503"))
        scheduler = make_scheduler(small_buffer, playback, source, telemetry)

        assert await scheduler.perform_rebuild() == "skipped"

        playback.pause.assert_not_called()
        playback.resume.assert_not_called()
        assert small_buffer.consume(100) == b"keep me"

    @pytest.mark.asyncio
    async def test_silent_source_skips_rebuild(self, small_buffer, playback, telemetry):
        """No first chunk within probe_timeout is treated as unavailable."""
        small_buffer.append(b"keep me")
        source = FakeSource([], hold_open=True)
        scheduler = make_scheduler(small_buffer, playback, source, telemetry)

        assert await scheduler.perform_rebuild() == "skipped"
        assert small_buffer.size() == 7
        assert source.closed_streams == 1

    @pytest.mark.asyncio
    async def test_empty_source_skips_rebuild(self, small_buffer, playback, telemetry):
        scheduler = make_scheduler(small_buffer, playback, FakeSource([]), telemetry)
        assert await scheduler.perform_rebuild() == "skipped"

    @pytest.mark.asyncio
    async def test_refill_timeout_resumes_with_partial_buffer(
        self, small_buffer, playback, telemetry
    ):
        small_buffer.append(bytes(80))
        scheduler = make_scheduler(small_buffer, playback, FakeSource([b"live"]), telemetry)

        assert await scheduler.perform_rebuild() == "timeout"

        assert small_buffer.size() == 0
        playback.pause.assert_called_once()
        playback.resume.assert_called_once()


class TestRebuildLock:
    @pytest.mark.asyncio
    async def test_only_one_rebuild_at_a_time(self, small_buffer, playback, telemetry):
        """A second request while one is running is refused."""
        source = FakeSource([b"live"], [b"live"])
        scheduler = make_scheduler(small_buffer, playback, source, telemetry)

        assert scheduler.rebuild_now() is True
        assert scheduler.is_rebuilding is True
        assert scheduler.rebuild_now() is False

        await wait_until(lambda: not scheduler.is_rebuilding)
        assert scheduler.last_result == "timeout"
        assert scheduler.last_finished is not None
        assert playback.pause.call_count == 1

        # Lock released: next request goes through
        assert scheduler.rebuild_now() is True
        await wait_until(lambda: not scheduler.is_rebuilding)
        assert playback.pause.call_count == 2
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failed_probe_releases_lock(self, small_buffer, playback, telemetry):
        source = FakeSource(SourceConnectError("refused"))
        scheduler = make_scheduler(small_buffer, playback, source, telemetry)

        assert scheduler.rebuild_now() is True
        await wait_until(lambda: not scheduler.is_rebuilding)
        assert scheduler.last_result == "skipped"

    @pytest.mark.asyncio
    async def test_stop_cancels_rebuild_and_resumes(self, small_buffer, playback, telemetry):
        """Stopping mid-refill releases the lock and never leaves playback paused."""
        scheduler = make_scheduler(
            small_buffer, playback, FakeSource([b"live"]), telemetry, refill_timeout=60
        )

        assert scheduler.rebuild_now() is True
        await wait_until(lambda: playback.pause.called)

        await scheduler.stop()

        assert scheduler.is_rebuilding is False
        playback.resume.assert_called_once()
        assert scheduler.last_result is None


class TestScheduleLoop:
    @pytest.mark.asyncio
    async def test_loop_fires_at_rebuild_hour(self, small_buffer, playback, telemetry):
        """The loop sleeps until the hour, then starts a rebuild."""
        source = FakeSource(SourceConnectError("refused"))
        scheduler = RebuildScheduler(
            small_buffer,
            playback,
            source,
            RebuildConfig(hour=4, probe_timeout=0.05),
            telemetry=telemetry,
            clock=lambda: datetime(2026, 3, 10, 3, 59, 59, 950000),
        )

        scheduler.start()
        scheduler.start()
        try:
            await wait_until(lambda: source.connect_calls >= 1)
        finally:
            await scheduler.stop()

        assert scheduler.is_rebuilding is False
