"""Tests for configuration system."""

import pytest

from radio_buffer.config import (
    BufferConfig,
    Config,
    HealthConfig,
    IngestConfig,
    PlaybackConfig,
    RebuildConfig,
    StreamConfig,
)


@pytest.fixture(autouse=True)
def no_stream_url_env(monkeypatch):
    """Keep the developer's STREAM_URL out of config tests."""
    monkeypatch.delenv("STREAM_URL", raising=False)


def test_stream_config_defaults():
    """StreamConfig has correct defaults."""
    config = StreamConfig()
    assert config.url == ""
    assert config.connect_timeout == 15.0
    assert config.read_timeout == 15.0


def test_buffer_config_defaults():
    """BufferConfig defaults to an hour at 24KB/s."""
    config = BufferConfig()
    assert config.duration_minutes == 60.0
    assert config.initial_minutes == 1.0
    assert config.bitrate_kbps == 24
    assert config.file_backed is True


def test_ingest_config_defaults():
    config = IngestConfig()
    assert config.max_retries == 5
    assert config.retry_base_delay == 1.0
    assert config.idle_delay == 2.0
    assert config.read_error_cooldown == 2.0


def test_playback_config_defaults():
    """PlaybackConfig plays through ffplay reading stdin."""
    config = PlaybackConfig()
    assert config.chunk_ms == 100
    assert config.player_command[0] == "ffplay"
    assert config.player_command[-2:] == ["-i", "-"]
    assert "-nodisp" in config.player_command
    assert config.underrun_backoff == 0.5
    assert config.restart_cooldown == 1.0


def test_rebuild_and_health_defaults():
    assert RebuildConfig().hour == 4
    assert RebuildConfig().probe_timeout == 10.0
    assert RebuildConfig().refill_timeout == 300.0
    assert HealthConfig().port == 3000
    assert HealthConfig().sample_interval == 30.0


def test_derived_sizes():
    """Target size is duration * 60 * bitrate * 1024."""
    config = Config()
    assert config.bytes_per_second == 24 * 1024
    assert config.target_bytes == 60 * 60 * 24 * 1024

    config.buffer.duration_minutes = 0.5
    config.buffer.bitrate_kbps = 1
    assert config.target_bytes == 30 * 1024


def test_config_paths():
    """Config provides correct paths."""
    config = Config()
    assert "radio-buffer" in str(config.config_dir)
    assert "radio-buffer" in str(config.state_dir)
    assert config.config_path.name == "config.toml"
    assert config.log_path.name == "daemon.log"
    assert config.pid_path.name == "daemon.pid"
    assert config.buffer_path == config.state_dir / "buffer.bin"


def test_buffer_path_none_when_not_file_backed():
    config = Config()
    config.buffer.file_backed = False
    assert config.buffer_path is None


def test_health_url_uses_loopback_for_wildcard_host():
    config = Config()
    assert config.health_url == "http://127.0.0.1:3000"

    config.health.host = "10.0.0.5"
    config.health.port = 8080
    assert config.health_url == "http://10.0.0.5:8080"


def test_config_save_creates_file(tmp_path):
    """Config.save() creates the file and any missing parents."""
    config_path = tmp_path / "nested" / "config.toml"
    Config().save(config_path)
    assert config_path.exists()
    text = config_path.read_text()
    assert "[stream]" in text
    assert "[playback]" in text


def test_config_save_load_preserves_values(tmp_path):
    """Values written by save() come back from load()."""
    config_path = tmp_path / "config.toml"
    config = Config()
    config.stream.url = "http://radio.example/live"
    config.buffer.duration_minutes = 30.0
    config.buffer.file_backed = False
    config.playback.chunk_ms = 50
    config.playback.player_command = ["mpv", "-"]
    config.rebuild.hour = 23
    config.health.port = 3100
    config.save(config_path)

    loaded = Config.load(config_path)

    assert loaded.stream.url == "http://radio.example/live"
    assert loaded.buffer.duration_minutes == 30.0
    assert loaded.buffer.file_backed is False
    assert loaded.playback.chunk_ms == 50
    assert loaded.playback.player_command == ["mpv", "-"]
    assert loaded.rebuild.hour == 23
    assert loaded.health.port == 3100


def test_config_load_missing_file_returns_defaults(tmp_path):
    """Loading a non-existent file gives the defaults."""
    loaded = Config.load(tmp_path / "missing.toml")
    assert loaded == Config()


def test_config_load_partial_file(tmp_path):
    """Missing keys fall back to defaults."""
    config_path = tmp_path / "config.toml"
    config_path.write_text('[stream]\nurl = "http://radio.example/a"\n\n[rebuild]\nhour = 2\n')

    loaded = Config.load(config_path)

    assert loaded.stream.url == "http://radio.example/a"
    assert loaded.stream.read_timeout == 15.0
    assert loaded.rebuild.hour == 2
    assert loaded.rebuild.refill_timeout == 300.0
    assert loaded.buffer == BufferConfig()


def test_stream_url_env_overrides_file(tmp_path, monkeypatch):
    """STREAM_URL wins over the file."""
    config_path = tmp_path / "config.toml"
    config_path.write_text('[stream]\nurl = "http://radio.example/file"\n')
    monkeypatch.setenv("STREAM_URL", "http://radio.example/env")

    assert Config.load(config_path).stream.url == "http://radio.example/env"


def test_config_load_invalid_toml(tmp_path):
    config_path = tmp_path / "config.toml"
    config_path.write_text("[stream\nurl = ")

    with pytest.raises(ValueError, match="Failed to parse config file"):
        Config.load(config_path)


@pytest.mark.parametrize(
    "content, message",
    [
        ("[buffer]\nduration_minutes = 0\n", "duration_minutes"),
        ("[buffer]\ninitial_minutes = -1\n", "initial_minutes"),
        ("[buffer]\nbitrate_kbps = 0\n", "bitrate_kbps"),
        ("[buffer]\npoll_interval = 0\n", "poll_interval"),
        ("[playback]\nchunk_ms = 0\n", "chunk_ms"),
        ("[playback]\nplayer_command = []\n", "player_command"),
        ("[rebuild]\nhour = 24\n", "rebuild hour"),
        ("[rebuild]\nhour = -1\n", "rebuild hour"),
    ],
)
def test_config_load_rejects_invalid_values(tmp_path, content, message):
    """Out-of-range values raise ValueError naming the field."""
    config_path = tmp_path / "config.toml"
    config_path.write_text(content)

    with pytest.raises(ValueError, match=message):
        Config.load(config_path)
