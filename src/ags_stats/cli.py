"""CLI commands for ags-stats."""

import click


def _load_config():
    from ags_stats.config import Config

    try:
        return Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="ags-stats")
def main() -> None:
    """Sample CPU, memory and network stats for desktop graph widgets."""
    pass


@main.command()
def daemon() -> None:
    """Run the background sampler."""
    import asyncio

    from ags_stats.daemon import run_daemon

    asyncio.run(run_daemon(_load_config()))


@main.command()
def status() -> None:
    """Quick health check."""
    from ags_stats.formatting import format_age
    from ags_stats.lifecycle import LifecycleGuard
    from ags_stats.socket_client import read_history_file

    config = _load_config()

    pid = LifecycleGuard(config.pid_path).peek_running()
    if pid is not None:
        click.echo(f"Daemon: running (PID {pid})")
    else:
        click.echo("Daemon: stopped")

    socket_state = "present" if config.socket_path.exists() else "missing"
    click.echo(f"Socket: {config.socket_path} ({socket_state})")

    try:
        snapshot = read_history_file(config.history_path)
    except (OSError, ValueError):
        click.echo("History: not available")
        return

    click.echo(f"History: {config.history_path} (updated {format_age(snapshot.last_update)})")


@main.command()
@click.option(
    "--source",
    type=click.Choice(["auto", "socket", "file"]),
    default="auto",
    help="Where to read history from",
)
@click.option("--json", "as_json", is_flag=True, help="Print the raw snapshot as JSON")
def history(source: str, as_json: bool) -> None:
    """Show the rolling history the daemon is serving."""
    from ags_stats.formatting import format_age, format_kb, format_rate
    from ags_stats.socket_client import load_history

    config = _load_config()

    try:
        snapshot, used = load_history(config, source=source)  # type: ignore[arg-type]
    except (OSError, TimeoutError, ValueError) as e:
        click.echo(f"Error: history not available ({e})", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(snapshot.to_json(indent=2))
        return

    def summary(values: tuple[float, ...], fmt) -> str:
        if not values:
            return "-"
        avg = sum(values) / len(values)
        return f"now {fmt(values[-1])}, peak {fmt(max(values))}, avg {fmt(avg)}"

    def pct(value: float) -> str:
        return f"{value:.1f}%"

    click.echo(f"Source: {used} (updated {format_age(snapshot.last_update)})")
    click.echo(f"Samples per metric: {len(snapshot.cpu)}")
    click.echo(f"  {'cpu':18} {summary(snapshot.cpu, pct)}")
    click.echo(f"  {'cpu_iowait':18} {summary(snapshot.cpu_iowait, pct)}")
    for i, core in enumerate(snapshot.cpu_cores):
        click.echo(f"  {f'core {i}':18} {summary(core, pct)}")
    total = format_kb(snapshot.memory_total)
    click.echo(f"  {'memory':18} {summary(snapshot.memory, pct)} of {total}")
    for name in ("apps", "cached", "buffers", "slab", "shmem"):
        values = getattr(snapshot, f"memory_{name}")
        click.echo(f"  {f'memory_{name}':18} {summary(values, format_kb)}")
    click.echo(f"  {'network_download':18} {summary(snapshot.network_download, format_rate)}")
    click.echo(f"  {'network_upload':18} {summary(snapshot.network_upload, format_rate)}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw sample as JSON")
def latest(as_json: bool) -> None:
    """Show the most recent sample."""
    from ags_stats.formatting import format_age, format_cores, format_kb, format_rate
    from ags_stats.socket_client import load_latest

    config = _load_config()

    try:
        sample = load_latest(config)
    except (OSError, ValueError, KeyError) as e:
        click.echo(f"Error: latest sample not available ({e})", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(sample.to_json(indent=2))
        return

    mem = sample.memory
    click.echo(f"Sampled: {format_age(sample.timestamp)}")
    click.echo(f"CPU: {sample.cpu_usage:.1f}% {format_cores(sample.cpu_cores)}")
    click.echo(f"IO wait: {sample.cpu_iowait:.1f}%")
    click.echo(
        f"Memory: {mem.used_percentage:.1f}% of {format_kb(mem.total)} "
        f"(apps {format_kb(mem.apps)}, cached {format_kb(mem.cached)}, "
        f"buffers {format_kb(mem.buffers)}, slab {format_kb(mem.slab)}, "
        f"shmem {format_kb(mem.shmem)})"
    )
    click.echo(
        f"Network: down {format_rate(sample.network_download)}, "
        f"up {format_rate(sample.network_upload)}"
    )


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  history_size = {cfg.system.history_size}")
    click.echo(f"  heartbeat_samples = {cfg.system.heartbeat_samples}")
    click.echo()
    click.echo("[sampler]")
    click.echo(f"  proc_root = {cfg.sampler.proc_root}")
    click.echo(f"  clamp_negative_rates = {cfg.sampler.clamp_negative_rates}")
    click.echo()
    click.echo("[server]")
    click.echo(f"  write_timeout = {cfg.server.write_timeout}")
    click.echo()
    click.echo(f"Runtime dir: {cfg.runtime_dir}")
    click.echo(f"Log file: {cfg.log_path}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from ags_stats.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
