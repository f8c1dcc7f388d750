"""Paced playback: ring buffer -> player process.

PacedConsumer owns the playback state machine and the player process.
start() launches two independent tasks: the stream ingester filling the
buffer and the playback loop draining it at wall-clock rate, one fixed
duration chunk per tick.

State transitions:
    stopped   --start-->            buffering
    buffering --buffer >= chunk-->  playing
    playing   --buffer < chunk-->   buffering
    playing | buffering --pause-->  paused
    paused    --resume-->           buffering
    any       --stop-->             stopped
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable

import structlog

from radio_buffer import logging as console
from radio_buffer.config import IngestConfig, PlaybackConfig
from radio_buffer.ingester import StreamIngester
from radio_buffer.ringbuffer import RingBuffer
from radio_buffer.sink import PlayerProcess
from radio_buffer.source import StreamSource
from radio_buffer.telemetry import Telemetry, get_telemetry, report_task_failure

log = structlog.get_logger()


class PlaybackState(Enum):
    """Playback state machine states."""

    STOPPED = "stopped"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


class LoopResult(Enum):
    """Why a player run ended."""

    STOPPED = "stopped"
    RESTART = "restart"


PlayerFactory = Callable[[list[str]], Awaitable[PlayerProcess]]


class PacedConsumer:
    """Drives the player from the ring buffer at the stream's bitrate."""

    def __init__(
        self,
        buffer: RingBuffer,
        source: StreamSource,
        playback: PlaybackConfig | None = None,
        ingest: IngestConfig | None = None,
        *,
        initial_minutes: float = 0.0,
        telemetry: Telemetry | None = None,
        player_factory: PlayerFactory | None = None,
        on_task_failure: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.buffer = buffer
        self.config = playback or PlaybackConfig()
        self.initial_minutes = initial_minutes
        self.telemetry = telemetry or get_telemetry()
        self._player_factory = player_factory or PlayerProcess.spawn
        self._on_task_failure = on_task_failure

        ingest = ingest or IngestConfig()
        self.ingester = StreamIngester(
            source,
            buffer,
            self.is_stopped,
            max_retries=ingest.max_retries,
            retry_base_delay=ingest.retry_base_delay,
            idle_delay=ingest.idle_delay,
            read_error_cooldown=ingest.read_error_cooldown,
            telemetry=self.telemetry,
        )

        self.bytes_per_chunk = int(buffer.bytes_per_second * self.config.chunk_ms / 1000)
        self._state = PlaybackState.STOPPED
        self._ingest_task: asyncio.Task | None = None
        self._playback_task: asyncio.Task | None = None
        self._player: PlayerProcess | None = None

        self.chunks_written = 0
        self.underruns = 0
        self.player_starts = 0

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def player(self) -> PlayerProcess | None:
        """Currently running player, if any."""
        return self._player

    def is_stopped(self) -> bool:
        return self._state is PlaybackState.STOPPED

    def _set_state(self, state: PlaybackState) -> None:
        if state is not self._state:
            log.info("playback_state", old=self._state.value, new=state.value)
            self._state = state

    # ─────────────────────────────────────────────────────────────────────
    # Control
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start ingestion and playback. No-op unless stopped."""
        if self._state is not PlaybackState.STOPPED:
            return

        self._set_state(PlaybackState.BUFFERING)
        log.info("playback_service_starting")
        self.telemetry.add_breadcrumb("playback", "Playback service started")

        self._ingest_task = asyncio.create_task(self.ingester.run(), name="ingest")
        self._ingest_task.add_done_callback(
            report_task_failure(self.telemetry, "stream", self._on_task_failure)
        )
        self._playback_task = asyncio.create_task(self._playback_loop(), name="playback")
        self._playback_task.add_done_callback(
            report_task_failure(self.telemetry, "playback", self._on_task_failure)
        )

    def pause(self) -> bool:
        """Pause output. Only valid while playing or buffering."""
        if self._state not in (PlaybackState.PLAYING, PlaybackState.BUFFERING):
            return False
        self._set_state(PlaybackState.PAUSED)
        console.playback_paused()
        return True

    def resume(self) -> bool:
        """Resume output. Lands on buffering so the fill level is re-checked."""
        if self._state is not PlaybackState.PAUSED:
            return False
        self._set_state(PlaybackState.BUFFERING)
        console.playback_resumed()
        return True

    async def stop(self) -> None:
        """Stop everything and kill the player. Safe to call repeatedly."""
        self._set_state(PlaybackState.STOPPED)
        player = self._player

        for task in (self._ingest_task, self._playback_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                # Already reported by the done-callback
                log.debug("playback_task_error_on_stop", task=task.get_name(), error=str(e))
        self._ingest_task = None
        self._playback_task = None

        if player is not None:
            await player.stop()
        self._player = None

        log.info("playback_service_stopped")
        self.telemetry.add_breadcrumb("playback", "Playback service stopped")

    # ─────────────────────────────────────────────────────────────────────
    # Playback loop
    # ─────────────────────────────────────────────────────────────────────

    async def _playback_loop(self) -> None:
        """Wait for the initial buffer, then keep a player alive until stopped."""
        log.info("playback_loop_starting")
        self.telemetry.add_breadcrumb("playback", "Playback loop starting")

        if self.initial_minutes > 0:
            console.waiting_for_initial_buffer(self.initial_minutes)
        await self.buffer.wait_for_minutes(self.initial_minutes)
        console.buffer_ready()

        first_start = True
        while self._state is not PlaybackState.STOPPED:
            if first_start:
                log.info("player_starting")
                self.telemetry.add_breadcrumb("playback", "Player starting")
            else:
                log.warning("player_restarting")
                console.player_restarting()
                self.telemetry.add_breadcrumb("playback", "Player restarting", level="warning")
            first_start = False

            result = await self._run_player()
            if result is LoopResult.STOPPED or self._state is PlaybackState.STOPPED:
                break

            if self._state is PlaybackState.PLAYING:
                self._set_state(PlaybackState.BUFFERING)

            self.telemetry.add_breadcrumb("playback", "Player restart scheduled", level="warning")
            await asyncio.sleep(self.config.restart_cooldown)

    async def _run_player(self) -> LoopResult:
        """Spawn one player and pace audio into it until it dies or we stop."""
        try:
            player = await self._player_factory(self.config.player_command)
        except Exception as e:
            self.telemetry.capture_exception(e, tags={"component": "playback", "event": "spawn"})
            log.error("player_spawn_failed", error=str(e))
            console.player_spawn_failed(str(e))
            return LoopResult.RESTART

        self.player_starts += 1
        self._player = player
        try:
            return await self.run_ticks(player)
        finally:
            player.kill()
            self._player = None

    async def run_ticks(self, player: PlayerProcess) -> LoopResult:
        """Tick loop: one chunk per chunk_ms, anchored to the monotonic clock."""
        loop = asyncio.get_running_loop()
        chunk_seconds = self.config.chunk_ms / 1000
        next_write_at: float | None = None

        while True:
            state = self._state

            if state is PlaybackState.STOPPED:
                return LoopResult.STOPPED

            if player.exit_code is not None:
                log.error("player_exited", exit_code=player.exit_code, pid=player.pid)
                self.telemetry.capture_message(
                    "Player exited",
                    "error",
                    tags={"component": "playback", "event": "player_exit"},
                    extra={"exit_code": player.exit_code, "pid": player.pid, "state": state.value},
                )
                return LoopResult.RESTART

            if state is PlaybackState.PAUSED:
                next_write_at = None
                await asyncio.sleep(self.config.paused_poll)
                continue

            buf_size = self.buffer.size()
            if buf_size < self.bytes_per_chunk:
                if state is PlaybackState.PLAYING:
                    self.underruns += 1
                    self._set_state(PlaybackState.BUFFERING)
                    console.buffer_low()
                    self.telemetry.add_breadcrumb(
                        "buffer",
                        "Buffer low during playback",
                        level="warning",
                        data={"buf_size": buf_size, "bytes_per_chunk": self.bytes_per_chunk},
                    )
                next_write_at = None
                await asyncio.sleep(self.config.underrun_backoff)
                continue

            if state is PlaybackState.BUFFERING:
                self._set_state(PlaybackState.PLAYING)
                console.playback_resuming()
                self.telemetry.add_breadcrumb("playback", "Playback resumed")
                next_write_at = loop.time()

            if next_write_at is None:
                next_write_at = loop.time()

            chunk = self.buffer.consume(self.bytes_per_chunk)
            if chunk:
                try:
                    await player.write(chunk)
                except Exception as e:
                    self.telemetry.capture_exception(
                        e,
                        tags={"component": "playback", "event": "write"},
                        extra={
                            "buffer_size": buf_size,
                            "bytes_per_chunk": self.bytes_per_chunk,
                            "state": state.value,
                        },
                    )
                    log.error("player_write_failed", error=str(e))
                    return LoopResult.RESTART
                self.chunks_written += 1

            # Never schedule in the past, so a slow tick doesn't cause a burst
            now = loop.time()
            next_write_at = max(next_write_at + chunk_seconds, now)
            delay = next_write_at - now
            if delay > 0:
                await asyncio.sleep(delay)
