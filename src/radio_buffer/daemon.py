"""Background daemon for radio-buffer."""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from radio_buffer import logging as console
from radio_buffer.config import Config
from radio_buffer.errors import BufferInUseError
from radio_buffer.health import HealthMonitor
from radio_buffer.http_server import HealthServer
from radio_buffer.playback import PacedConsumer
from radio_buffer.ringbuffer import RingBuffer
from radio_buffer.scheduler import RebuildScheduler
from radio_buffer.source import StreamSource
from radio_buffer.telemetry import Telemetry, get_telemetry

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    started_at: datetime | None = None
    heartbeat_count: int = 0
    failure: BaseException | None = None

    def mark_started(self) -> None:
        self.running = True
        self.started_at = datetime.now()


class Daemon:
    """Wires source, buffer, playback, scheduler and health together."""

    def __init__(self, config: Config, telemetry: Telemetry | None = None):
        self.config = config
        self.state = DaemonState()
        self.telemetry = telemetry or get_telemetry()

        self.ring_buffer = RingBuffer(
            capacity=config.target_bytes,
            bytes_per_second=config.bytes_per_second,
            path=config.buffer_path,
            poll_interval=config.buffer.poll_interval,
            defer_open=True,
        )
        self.source = StreamSource(
            config.stream.url,
            connect_timeout=config.stream.connect_timeout,
            read_timeout=config.stream.read_timeout,
        )
        self.playback = PacedConsumer(
            self.ring_buffer,
            self.source,
            config.playback,
            config.ingest,
            initial_minutes=config.buffer.initial_minutes,
            telemetry=self.telemetry,
            on_task_failure=self._handle_task_failure,
        )
        self.scheduler = RebuildScheduler(
            self.ring_buffer,
            self.playback,
            self.source,
            config.rebuild,
            telemetry=self.telemetry,
            on_task_failure=self._handle_task_failure,
        )
        self.monitor = HealthMonitor(
            self.ring_buffer,
            self.playback,
            self.scheduler,
            sample_interval=config.health.sample_interval,
            telemetry=self.telemetry,
        )
        self.health_server = HealthServer(
            self.monitor,
            self.scheduler,
            host=config.health.host,
            port=config.health.port,
            telemetry=self.telemetry,
        )

        self._shutdown_event = asyncio.Event()
        self._stopped = False

    async def start(self) -> None:
        """Start all components and run until shutdown is requested."""
        from importlib.metadata import PackageNotFoundError, version

        try:
            pkg_version = version("radio-buffer")
        except PackageNotFoundError:
            pkg_version = "dev"
        log.info("daemon_starting", version=pkg_version)
        console.version_info("radio-buffer", pkg_version)

        if not self.config.stream.url:
            raise RuntimeError("No stream URL configured (set stream.url or STREAM_URL)")

        log.info(
            "daemon_config",
            url=self.config.stream.url,
            target_bytes=self.config.target_bytes,
            bitrate_kbps=self.config.buffer.bitrate_kbps,
            rebuild_hour=self.config.rebuild.hour,
        )
        console.config_summary(
            self.config.stream.url,
            self.config.target_bytes / 1024 / 1024,
            self.config.buffer.bitrate_kbps,
            self.config.rebuild.hour,
        )

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        # Check for existing instance
        if self._check_already_running():
            log.error("daemon_already_running")
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        # The backing file is only touched once this instance owns the PID file
        try:
            self.ring_buffer.open()
        except BufferInUseError as e:
            log.error("buffer_in_use", path=str(self.ring_buffer.path))
            raise RuntimeError(str(e)) from e

        await self.health_server.start()
        self.monitor.start()
        await self.playback.start()
        self.scheduler.start()

        self.state.mark_started()
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        await self.scheduler.stop()
        await self.playback.stop()
        await self.monitor.stop()
        await self.health_server.stop()
        self.ring_buffer.close()

        self._remove_pid_file()

        log.info("daemon_stopped")
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def _handle_task_failure(self, error: BaseException) -> None:
        """A background task died with an uncaught error: shut down in order."""
        log.error("background_task_failed", error=str(error))
        self.state.failure = error
        self._shutdown_event.set()

    async def _main_loop(self) -> None:
        """Wait for shutdown, logging a heartbeat every health sample interval."""
        interval = self.config.health.sample_interval
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                self._heartbeat()

    def _heartbeat(self) -> None:
        health = self.ring_buffer.health()
        received_mb = self.playback.ingester.bytes_received / 1024 / 1024
        self.state.heartbeat_count += 1
        log.info(
            "daemon_heartbeat",
            percentage=health.percentage,
            minutes=health.estimated_minutes,
            state=self.playback.state.value,
            received_mb=round(received_mb, 1),
            chunks_written=self.playback.chunks_written,
            underruns=self.playback.underruns,
            player_starts=self.playback.player_starts,
        )
        console.heartbeat(
            health.percentage,
            health.estimated_minutes,
            self.playback.state.value,
            received_mb,
            self.playback.chunks_written,
            self.playback.underruns,
        )

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file if it is ours."""
        path = self.config.pid_path
        if path.exists() and path.read_text().strip() == str(os.getpid()):
            path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if another daemon owns the PID file.

        Verifies the PID belongs to a radio-buffer process, so a stale file
        left after a reboot doesn't block startup.
        """
        path = self.config.pid_path
        if not path.exists():
            return False

        try:
            pid = int(path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            path.unlink()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            path.unlink()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            console.already_running(pid)
            return True

        if "radio-buffer" in cmdline_str or "radio_buffer" in cmdline_str:
            log.info("daemon_already_running_verified", pid=pid)
            console.already_running(pid)
            return True

        log.warning("pid_file_stale", reason="different process", pid=pid, actual=proc.name())
        console.stale_pid_file(pid)
        path.unlink()
        return False


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    # Create config file with defaults if it doesn't exist
    if not config.config_path.exists():
        Config().save(config.config_path)
        console.config_created(str(config.config_path))

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        daemon.telemetry.capture_exception(e, tags={"component": "daemon", "event": "crash"})
        raise
    finally:
        await daemon.stop()

    if daemon.state.failure is not None:
        raise daemon.state.failure
