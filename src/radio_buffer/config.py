"""Configuration system for radio-buffer."""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class StreamConfig:
    """Upstream audio source configuration."""

    url: str = ""  # HTTP(S) address of the audio stream
    connect_timeout: float = 15.0  # Seconds to establish the connection
    read_timeout: float = 15.0  # Max seconds between two received chunks


@dataclass
class BufferConfig:
    """Ring buffer sizing.

    All size <-> duration conversions use the assumed bitrate, so the
    target size is duration_minutes * 60 * bitrate_kbps * 1024 bytes.
    """

    duration_minutes: float = 60.0  # Audio held in the buffer when full
    initial_minutes: float = 1.0  # Audio required before the first playback tick
    bitrate_kbps: int = 24  # Kilobytes per second (192kbps = 24KB/s)
    poll_interval: float = 1.0  # Seconds between fill-level checks while waiting
    file_backed: bool = True  # Map the buffer onto a file in state_dir


@dataclass
class IngestConfig:
    """Reconnect policy for the stream ingester."""

    max_retries: int = 5  # Exponential retries before falling back to idle delay
    retry_base_delay: float = 1.0  # First backoff delay, doubled on each retry
    idle_delay: float = 2.0  # Wait after exhausting retries
    read_error_cooldown: float = 2.0  # Wait after a mid-stream failure


@dataclass
class PlaybackConfig:
    """Paced consumer and player process configuration."""

    chunk_ms: int = 100  # Duration of audio written per tick
    player_command: list[str] = field(
        default_factory=lambda: ["ffplay", "-nodisp", "-autoexit", "-af", "volume=1.3", "-i", "-"]
    )
    paused_poll: float = 0.1  # Seconds between checks while paused
    underrun_backoff: float = 0.5  # Seconds to wait when buffer is below one chunk
    restart_cooldown: float = 1.0  # Seconds before respawning a dead player


@dataclass
class RebuildConfig:
    """Daily drain-and-refill cycle."""

    hour: int = 4  # Local hour of day (0-23) to rebuild at
    probe_timeout: float = 10.0  # Seconds the source has to deliver a first chunk
    refill_timeout: float = 300.0  # Max seconds to wait for the buffer to refill


@dataclass
class HealthConfig:
    """Health endpoint and sampler."""

    host: str = "0.0.0.0"
    port: int = 3000
    sample_interval: float = 30.0  # Seconds between background health samples


@dataclass
class SystemConfig:
    """Process-level settings."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


SECTIONS = ("stream", "buffer", "ingest", "playback", "rebuild", "health", "system")


@dataclass
class Config:
    """Main configuration container."""

    stream: StreamConfig = field(default_factory=StreamConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    rebuild: RebuildConfig = field(default_factory=RebuildConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def bytes_per_second(self) -> int:
        """Assumed stream bitrate in bytes per second."""
        return self.buffer.bitrate_kbps * 1024

    @property
    def target_bytes(self) -> int:
        """Ring buffer capacity in bytes."""
        return int(self.buffer.duration_minutes * 60 * self.bytes_per_second)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "radio-buffer"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and the buffer file."""
        return Path.home() / ".local" / "state" / "radio-buffer"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID)."""
        return Path("/tmp/radio-buffer")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def buffer_path(self) -> Path | None:
        """Backing file for the ring buffer, or None for an anonymous map."""
        if not self.buffer.file_backed:
            return None
        return self.state_dir / "buffer.bin"

    @property
    def health_url(self) -> str:
        """Base URL of the local health endpoint."""
        host = "127.0.0.1" if self.health.host in ("0.0.0.0", "") else self.health.host
        return f"http://{host}:{self.health.port}"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        The STREAM_URL environment variable overrides stream.url.
        """
        defaults = cls()
        path = path or defaults.config_path

        data: dict = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = tomlkit.load(f).unwrap()
            except tomlkit.exceptions.TOMLKitError as e:
                raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            stream=_load_section(StreamConfig, data.get("stream", {})),
            buffer=_load_buffer_config(data.get("buffer", {})),
            ingest=_load_section(IngestConfig, data.get("ingest", {})),
            playback=_load_playback_config(data.get("playback", {})),
            rebuild=_load_rebuild_config(data.get("rebuild", {})),
            health=_load_section(HealthConfig, data.get("health", {})),
            system=_load_section(SystemConfig, data.get("system", {})),
        )

        env_url = os.environ.get("STREAM_URL")
        if env_url:
            config.stream.url = env_url
        return config


def _load_section(cls: type, data: dict):
    """Build a flat section dataclass, using its defaults for missing keys."""
    defaults = cls()
    return cls(**{f.name: data.get(f.name, getattr(defaults, f.name)) for f in fields(cls)})


def _load_buffer_config(data: dict) -> BufferConfig:
    """Load buffer config, validating sizes."""
    config = _load_section(BufferConfig, data)
    if config.duration_minutes <= 0:
        raise ValueError(f"duration_minutes must be > 0, got {config.duration_minutes}")
    if config.initial_minutes < 0:
        raise ValueError(f"initial_minutes must be >= 0, got {config.initial_minutes}")
    if config.bitrate_kbps < 1:
        raise ValueError(f"bitrate_kbps must be >= 1, got {config.bitrate_kbps}")
    if config.poll_interval <= 0:
        raise ValueError(f"poll_interval must be > 0, got {config.poll_interval}")
    return config


def _load_playback_config(data: dict) -> PlaybackConfig:
    """Load playback config, validating chunk duration and command."""
    config = _load_section(PlaybackConfig, data)
    if config.chunk_ms < 1:
        raise ValueError(f"chunk_ms must be >= 1, got {config.chunk_ms}")
    if not config.player_command:
        raise ValueError("player_command must not be empty")
    config.player_command = [str(part) for part in config.player_command]
    return config


def _load_rebuild_config(data: dict) -> RebuildConfig:
    """Load rebuild config, validating the hour of day."""
    config = _load_section(RebuildConfig, data)
    if not 0 <= config.hour <= 23:
        raise ValueError(f"rebuild hour must be within 0-23, got {config.hour}")
    return config
