"""Player process that renders the paced audio stream."""

from __future__ import annotations

import asyncio

import structlog

from radio_buffer.errors import SinkSpawnError, SinkWriteError

log = structlog.get_logger()


class PlayerProcess:
    """Child process consuming audio on stdin."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @classmethod
    async def spawn(cls, command: list[str]) -> "PlayerProcess":
        """Start the player.

        Raises:
            SinkSpawnError: If the executable can't be started
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SinkSpawnError(f"Failed to spawn player: {e}") from e
        log.info("player_spawned", pid=process.pid, command=command[0])
        return cls(process)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Exit status, or None while the player is alive."""
        return self._process.returncode

    async def write(self, chunk: bytes) -> None:
        """Write one chunk and wait for the pipe to drain.

        Raises:
            SinkWriteError: If stdin is gone or the pipe is broken
        """
        stdin = self._process.stdin
        if stdin is None:
            raise SinkWriteError("Player stdin unavailable")
        try:
            stdin.write(chunk)
            await stdin.drain()
        except OSError as e:
            raise SinkWriteError(f"Player write failed: {e}") from e

    def kill(self) -> None:
        """Forcibly terminate the player if still running."""
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass  # Process already exited

    async def stop(self, timeout: float = 5.0) -> None:
        """Kill the player and reap it."""
        self.kill()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("player_reap_timeout", pid=self.pid)
