"""Fixed-size ring buffer for stream audio.

Holds the most recent N minutes of the stream as raw bytes. Writes never
block: when the buffer is full the oldest bytes are overwritten, so the
buffer is always a sliding window over the newest audio.

Storage is a memory map of exactly `capacity` bytes, backed by a file in
the state directory or anonymous memory. A backing file is held under an
exclusive flock while mapped, so a second process can never resize it
under a live map. All mutation goes through append(), consume() and
clear(), serialized by a single lock.
"""

from __future__ import annotations

import asyncio
import fcntl
import mmap
import os
import threading
from dataclasses import dataclass
from pathlib import Path

import structlog

from radio_buffer.errors import BufferInUseError

log = structlog.get_logger()

HEALTHY_PERCENTAGE = 80.0


@dataclass(frozen=True)
class BufferHealth:
    """Fill level of the buffer relative to its target."""

    current_size: int
    target_size: int
    percentage: float  # 0-100, rounded to 2 decimals
    estimated_minutes: float  # Audio held, at the assumed bitrate
    is_healthy: bool


class RingBuffer:
    """Byte ring buffer with overwrite-on-overflow semantics.

    capacity is also the health target: a full buffer is 100% healthy.
    """

    def __init__(
        self,
        capacity: int,
        bytes_per_second: int,
        path: Path | None = None,
        poll_interval: float = 1.0,
        defer_open: bool = False,
    ) -> None:
        """Create the buffer.

        Args:
            capacity: Size of the ring in bytes
            bytes_per_second: Assumed stream bitrate, for minute estimates
            path: Backing file, or None for anonymous memory
            poll_interval: Sleep between checks in the wait_for_* methods
            defer_open: Leave storage unmapped until open() is called
        """
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        if bytes_per_second < 1:
            raise ValueError(f"bytes_per_second must be >= 1, got {bytes_per_second}")

        self._capacity = capacity
        self.bytes_per_second = bytes_per_second
        self.poll_interval = poll_interval
        self.path = path

        self._lock = threading.Lock()
        self._filled = 0
        self._read = 0
        self._write = 0
        self._opened = False
        self._closed = False

        self._fd: int | None = None
        self._map: mmap.mmap | None = None

        log.debug(
            "ring_buffer_created",
            capacity=capacity,
            path=str(path) if path else None,
        )
        if not defer_open:
            self.open()

    def open(self) -> None:
        """Map the storage. Does nothing if already open.

        Raises:
            BufferInUseError: If another process holds the backing file
        """
        with self._lock:
            if self._opened:
                return
            if self._closed:
                raise ValueError("Ring buffer is closed")

            cap = self._capacity
            if cap > 0 and self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
                try:
                    # Never resize a file another process has mapped
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError as e:
                    os.close(fd)
                    raise BufferInUseError(
                        f"Buffer file {self.path} is in use by another process"
                    ) from e
                try:
                    os.ftruncate(fd, cap)
                    self._map = mmap.mmap(fd, cap)
                except OSError:
                    os.close(fd)
                    raise
                self._fd = fd
            elif cap > 0:
                self._map = mmap.mmap(-1, cap)
            self._opened = True

        log.debug("ring_buffer_opened", path=str(self.path) if self.path else None)

    def __len__(self) -> int:
        """Return number of buffered bytes."""
        return self.size()

    @property
    def capacity(self) -> int:
        """Maximum number of bytes the buffer can hold."""
        return self._capacity

    @property
    def target_size(self) -> int:
        """Fill level considered 100% healthy."""
        return self._capacity

    @property
    def read_offset(self) -> int:
        return self._read

    @property
    def write_offset(self) -> int:
        return self._write

    @property
    def is_empty(self) -> bool:
        """Return True if no bytes are buffered."""
        return self.size() == 0

    def size(self) -> int:
        """Return number of buffered bytes."""
        with self._lock:
            return self._filled

    def append(self, chunk: bytes) -> None:
        """Write chunk at the write cursor, evicting the oldest bytes on overflow."""
        n = len(chunk)
        with self._lock:
            if n == 0 or self._map is None:
                return
            cap = self._capacity
            data = memoryview(chunk)

            if n >= cap:
                # Only the newest `cap` bytes survive
                self._map[0:cap] = data[n - cap :]
                self._read = 0
                self._write = 0
                self._filled = cap
                return

            first = min(n, cap - self._write)
            self._map[self._write : self._write + first] = data[:first]
            if first < n:
                self._map[0 : n - first] = data[first:]
            self._write = (self._write + n) % cap

            overflow = self._filled + n - cap
            if overflow > 0:
                self._read = (self._read + overflow) % cap
                self._filled = cap
            else:
                self._filled += n

    def consume(self, n: int) -> bytes:
        """Remove and return up to n of the oldest bytes.

        Returns b"" when nothing is buffered.
        """
        with self._lock:
            count = min(n, self._filled)
            if count <= 0 or self._map is None:
                return b""
            cap = self._capacity

            first = min(count, cap - self._read)
            out = self._map[self._read : self._read + first]
            if first < count:
                out += self._map[0 : count - first]

            self._read = (self._read + count) % cap
            self._filled -= count
            return out

    def clear(self) -> None:
        """Drop all buffered bytes. Capacity is unchanged."""
        with self._lock:
            self._filled = 0
            self._read = 0
            self._write = 0

    def health(self) -> BufferHealth:
        """Return fill level relative to target."""
        current = self.size()
        target = self.target_size
        percentage = round(min(100.0, current / target * 100), 2) if target > 0 else 0.0
        return BufferHealth(
            current_size=current,
            target_size=target,
            percentage=percentage,
            estimated_minutes=round(current / self.bytes_per_second / 60, 2),
            is_healthy=percentage >= HEALTHY_PERCENTAGE,
        )

    def bytes_for_minutes(self, minutes: float) -> int:
        """Convert a duration to a byte count at the assumed bitrate."""
        return int(minutes * 60 * self.bytes_per_second)

    async def wait_for_size(self, n: int) -> None:
        """Wait until at least n bytes are buffered, polling at poll_interval."""
        if n <= 0:
            return
        while self.size() < n:
            await asyncio.sleep(self.poll_interval)

    async def wait_for_target(self) -> None:
        """Wait until the buffer is full."""
        await self.wait_for_size(self.target_size)

    async def wait_for_minutes(self, minutes: float) -> None:
        """Wait until `minutes` of audio are buffered (capped at the target)."""
        await self.wait_for_size(min(self.target_size, self.bytes_for_minutes(minutes)))

    def close(self) -> None:
        """Release the memory map and backing file. Safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._filled = 0
            self._read = 0
            self._write = 0
            if self._map is not None:
                self._map.close()
                self._map = None
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None
        log.debug("ring_buffer_closed")
