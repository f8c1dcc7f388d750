"""Shared test fixtures for radio-buffer."""

import pytest

from radio_buffer.config import PlaybackConfig
from radio_buffer.ringbuffer import RingBuffer
from radio_buffer.telemetry import Telemetry


@pytest.fixture
def telemetry() -> Telemetry:
    """Fresh telemetry instance per test."""
    return Telemetry()


@pytest.fixture
def buffer() -> RingBuffer:
    """Small anonymous buffer: 10 seconds at 1000 bytes/second."""
    buf = RingBuffer(capacity=10_000, bytes_per_second=1000, poll_interval=0.01)
    yield buf
    buf.close()


@pytest.fixture
def fast_playback() -> PlaybackConfig:
    """Playback config with short sleeps for tests."""
    return PlaybackConfig(
        chunk_ms=10,
        player_command=["fake-player"],
        paused_poll=0.005,
        underrun_backoff=0.005,
        restart_cooldown=0.01,
    )
