"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (daemon_started, buffer_low, rebuild_skipped, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from radio_buffer.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    MUSIC = "🎵"
    HEARTBEAT = "[magenta]♡[/]"
    PAUSE = "[yellow]⏸[/]"
    PLAY = "[green]▶[/]"
    REBUILD = "🔄"
    SIGNAL = "⚡"
    ALERT = "[bold red]![/]"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def percentage_color(percentage: float) -> str:
    """Return Rich color name for a buffer fill percentage."""
    if percentage >= 80:
        return "green"
    elif percentage >= 30:
        return "bright_yellow"
    return "bright_red"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}", Icon.MUSIC)


def config_summary(url: str, target_mb: float, bitrate_kbps: int, rebuild_hour: int) -> None:
    """Log config summary."""
    info(
        f"Stream [cyan]{url}[/], buffer [cyan]{target_mb:.1f}MB[/] "
        f"[dim]@ {bitrate_kbps}KB/s, rebuild at {rebuild_hour:02d}:00[/]"
    )


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]")


def daemon_started() -> None:
    """Log daemon startup complete."""
    info("Running! Press Ctrl+C to stop", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Shutting down...", Icon.WAIT)


def daemon_stopped() -> None:
    """Log daemon shutdown complete."""
    info("Stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def already_running(pid: int | None = None) -> None:
    """Log daemon already running error."""
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def stale_pid_file(pid: int) -> None:
    """Log stale PID file."""
    info(f"[dim]Stale PID file: PID {pid} is not a radio-buffer daemon[/]")


def health_listening(host: str, port: int) -> None:
    """Log health server ready."""
    shown = "localhost" if host in ("0.0.0.0", "") else host
    info(f"Health: [cyan]http://{shown}:{port}/health[/]")


def buffer_fill_starting() -> None:
    """Log ingestion started."""
    info("Starting buffer fill", Icon.CONNECTED)


def stream_connect_failed(error_msg: str) -> None:
    """Log connect retries exhausted."""
    warn(f"Stream connect failed: {error_msg}", Icon.DISCONNECTED)


def stream_read_failed(error_msg: str) -> None:
    """Log mid-stream failure."""
    warn(f"Stream read failed: {error_msg}", Icon.DISCONNECTED)


def waiting_for_initial_buffer(minutes: float) -> None:
    """Log initial buffer wait."""
    info(f"Waiting for initial buffer [dim]({minutes:g} min)[/]", Icon.WAIT)


def buffer_ready() -> None:
    """Log initial buffer reached."""
    info("Buffer ready", Icon.OK)


def buffer_low() -> None:
    """Log underrun during playback."""
    warn("Buffer low, waiting...")


def playback_resuming() -> None:
    """Log playback (re)entering playing state."""
    info("Resuming playback", Icon.PLAY)


def playback_paused() -> None:
    """Log pause."""
    info("Paused", Icon.PAUSE)


def playback_resumed() -> None:
    """Log resume request."""
    info("Resumed", Icon.PLAY)


def player_restarting() -> None:
    """Log player respawn."""
    warn("Restarting player")


def player_spawn_failed(error_msg: str) -> None:
    """Log player spawn failure."""
    error(f"Player failed to start: {error_msg}", Icon.FAIL)


def rebuild_scheduled(at: datetime, delay: float) -> None:
    """Log next rebuild time."""
    info(f"Next rebuild in {round(delay / 3600)} hours [dim]({at:%Y-%m-%d %H:%M})[/]")


def rebuild_starting() -> None:
    """Log rebuild start."""
    info("Rebuilding buffer", Icon.REBUILD)


def rebuild_skipped(reason: str) -> None:
    """Log rebuild skipped."""
    warn(f"Rebuild skipped: stream unavailable ({reason})")


def rebuild_refilling() -> None:
    """Log rebuild waiting for refill."""
    info("Waiting for buffer to refill...", Icon.WAIT)


def rebuild_finished(result: str) -> None:
    """Log rebuild result."""
    if result == "timeout":
        warn("Rebuild timed out; resuming with partial buffer")
    else:
        info("Buffer rebuild complete", Icon.OK)


def buffer_alert(percentage: float) -> None:
    """Log buffer threshold regression."""
    error(f"Buffer dropped to [bright_red]{percentage}%[/] after being healthy", Icon.ALERT)


def heartbeat(
    percentage: float,
    minutes: float,
    state: str,
    received_mb: float,
    chunks_written: int,
    underruns: int,
) -> None:
    """Log periodic heartbeat stats."""
    pc = percentage_color(percentage)
    info(
        f"buffer [{pc}]{percentage}%[/] [dim]({minutes:.1f} min)[/], "
        f"[cyan]{state}[/], "
        f"[dim]{round(received_mb, 1)}MB received, "
        f"{chunks_written} chunks played, {underruns} underruns[/]",
        Icon.HEARTBEAT,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to a rotating log file.

    Human-readable console output is handled by the Rich helpers above.

    Args:
        config: Application config with paths
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    # aiohttp logs through stdlib; keep its chatter out of the file
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source("daemon"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
