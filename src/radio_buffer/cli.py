"""CLI commands for radio-buffer."""

import click


@click.group()
@click.version_option(package_name="radio-buffer")
def main() -> None:
    """Play an internet radio stream through an hour-long buffer."""
    pass


@main.command()
@click.option("--url", default=None, help="Stream URL (overrides config and STREAM_URL)")
def daemon(url: str | None) -> None:
    """Run the buffering player."""
    import asyncio

    from radio_buffer.config import Config
    from radio_buffer.daemon import run_daemon

    try:
        config = Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if url:
        config.stream.url = url

    try:
        asyncio.run(run_daemon(config))
    except (RuntimeError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        # Background task failure, already logged and reported by the daemon
        click.echo(f"Error: daemon failed: {type(e).__name__}: {e}", err=True)
        raise SystemExit(1)


def _request(method: str, path: str) -> tuple[int, dict]:
    """Call the local health server and return (status, JSON body)."""
    import asyncio

    import aiohttp

    from radio_buffer.config import Config

    url = Config.load().health_url + path

    async def call() -> tuple[int, dict]:
        timeout = aiohttp.ClientTimeout(total=5)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url) as response:
                return response.status, await response.json(content_type=None)

    return asyncio.run(call())


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON report")
def status(as_json: bool) -> None:
    """Quick health check."""
    import asyncio
    import json

    import aiohttp

    try:
        code, body = _request("GET", "/health")
    except (aiohttp.ClientError, asyncio.TimeoutError):
        click.echo("Daemon: stopped")
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(body, indent=2))
    else:
        click.echo("Daemon: running")
        click.echo(f"Status: {body.get('status')}")
        if "error" in body:
            click.echo(f"Error: {body['error']}")
        buffer = body.get("buffer")
        if buffer:
            click.echo(
                f"Buffer: {buffer['sizeMB']}/{buffer['targetMB']} MB "
                f"({buffer['percentage']}%, ~{buffer['minutes']} min)"
            )
        if "playback" in body:
            click.echo(f"Playback: {body['playback']}")
        if "nextRebuild" in body:
            click.echo(f"Next rebuild: {body['nextRebuild']}")

    if code != 200:
        raise SystemExit(1)


@main.command()
def rebuild() -> None:
    """Drain and refill the buffer now."""
    import asyncio

    import aiohttp

    try:
        code, _ = _request("POST", "/rebuild")
    except (aiohttp.ClientError, asyncio.TimeoutError):
        click.echo("Error: daemon is not running", err=True)
        raise SystemExit(1)

    if code == 202:
        click.echo("Rebuild started")
    elif code == 409:
        click.echo("Rebuild already running")
    else:
        click.echo(f"Error: unexpected response {code}", err=True)
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import asdict

    from radio_buffer.config import SECTIONS, Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for name in SECTIONS:
        click.echo()
        click.echo(f"[{name}]")
        for key, value in asdict(getattr(cfg, name)).items():
            click.echo(f"  {key} = {value}")
    click.echo()
    click.echo(f"Buffer target: {cfg.target_bytes} bytes")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from radio_buffer.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        Config().save(cfg.config_path)
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from radio_buffer.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
