"""CLI commands for opencode-claw."""

import asyncio
import sys
import time
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from opencode_claw import __logo__, __version__
from opencode_claw.config.loader import ConfigError, find_config_path, load_config
from opencode_claw.config.schema import Config, LogConfig

app = typer.Typer(
    name="opencode-claw",
    help=f"{__logo__} opencode-claw - chat gateway for OpenCode",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} opencode-claw v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """opencode-claw - chat gateway for OpenCode."""
    pass


def configure_logging(log_config: LogConfig, verbose: bool = False) -> None:
    """Route loguru output to stderr and, when configured, a rotating file."""
    level = "DEBUG" if verbose else log_config.level
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_config.file:
        logger.add(log_config.file, level=level, rotation="10 MB", retention=5, enqueue=True)


def _load(config_file: str | None) -> tuple[Config, Path | None]:
    path = Path(config_file).expanduser() if config_file else find_config_path()
    try:
        return load_config(path), path
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _build_channels(config: Config) -> dict:
    from opencode_claw.channels.telegram import TelegramChannel
    from opencode_claw.channels.whatsapp import WhatsAppChannel

    channels = {}
    if config.channels.telegram.enabled:
        channels["telegram"] = TelegramChannel(config.channels.telegram)
    if config.channels.whatsapp.enabled:
        channels["whatsapp"] = WhatsAppChannel(config.channels.whatsapp)
    return channels


# ============================================================================
# Gateway / Server
# ============================================================================


@app.command()
def gateway(
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Start the opencode-claw gateway."""
    from opencode_claw.channels.router import Router
    from opencode_claw.cron.scheduler import CronScheduler
    from opencode_claw.outbox.drainer import OutboxDrainer
    from opencode_claw.outbox.writer import OutboxWriter
    from opencode_claw.runtime.opencode import OpencodeClient
    from opencode_claw.runtime.server import OpencodeServer
    from opencode_claw.session.manager import SessionManager

    config, _ = _load(config_file)
    configure_logging(config.log, verbose)
    console.print(f"{__logo__} Starting opencode-claw gateway...")

    channels = _build_channels(config)
    if not channels:
        console.print("[yellow]Warning: no channels enabled[/yellow]")

    health_server = None
    if config.health.enabled:
        import uvicorn

        from opencode_claw.health.app import create_health_app

        health_app = create_health_app(channels, config.outbox.directory, started_at=time.monotonic())
        uv_config = uvicorn.Config(health_app, host=config.health.host, port=config.health.port, log_level="warning")
        health_server = uvicorn.Server(uv_config)
        console.print(f"[green]✓[/green] Health: http://{config.health.host}:{config.health.port}/health")

    async def run():
        server = None
        base_url = config.opencode.base_url
        if config.opencode.spawn:
            server = OpencodeServer(
                hostname=config.opencode.hostname,
                port=config.opencode.port,
                directory=config.opencode.directory,
                startup_timeout_s=config.opencode.startup_timeout_s,
            )
            base_url = await server.start()

        runtime = OpencodeClient(
            base_url,
            directory=config.opencode.directory,
            timeout_s=config.opencode.request_timeout_s,
        )
        sessions = SessionManager(
            runtime,
            persist_path=config.sessions.persist_path,
            title_template=config.sessions.title_template,
        )
        router = Router(runtime, sessions, channels, config)
        outbox = OutboxWriter(config.outbox.directory)
        drainer = OutboxDrainer(
            config.outbox.directory,
            channels,
            poll_interval_ms=config.outbox.poll_interval_ms,
            max_attempts=config.outbox.max_attempts,
        )
        cron = CronScheduler(runtime, outbox, config.cron)

        tasks = [asyncio.create_task(channel.start(router.handle_inbound)) for channel in channels.values()]
        if health_server:
            tasks.append(asyncio.create_task(health_server.serve()))
        console.print(f"[green]✓[/green] Channels: {', '.join(channels) or 'none'}")
        try:
            await drainer.start()
            await cron.start()
            if tasks:
                await asyncio.gather(*tasks)
            else:
                await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\nShutting down...")
        finally:
            await cron.stop()
            await drainer.stop()
            if health_server:
                health_server.should_exit = True
            for channel in channels.values():
                try:
                    await channel.stop()
                except Exception as e:
                    logger.warning(f"Failed to stop {channel.name}: {e}")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await runtime.close()
            if server:
                await server.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


# ============================================================================
# Cron Commands
# ============================================================================


cron_app = typer.Typer(help="Inspect and run scheduled jobs")
app.add_typer(cron_app, name="cron")


@cron_app.command("list")
def cron_list(
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List configured cron jobs."""
    from opencode_claw.cron.scheduler import next_fire_time

    config, _ = _load(config_file)
    jobs = config.cron.jobs
    if not jobs:
        console.print("No cron jobs configured.")
        return

    table = Table(title="Cron Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Schedule")
    table.add_column("Enabled")
    table.add_column("Next Run")
    table.add_column("Reports To")
    for job in jobs:
        try:
            next_run = next_fire_time(job.schedule).strftime("%Y-%m-%d %H:%M")
        except (ValueError, KeyError) as e:
            next_run = f"[red]invalid ({e})[/red]"
        target = f"{job.report_to.channel}:{job.report_to.peer_id}" if job.report_to else ""
        table.add_row(job.id, job.schedule, "✓" if job.enabled else "✗", next_run, target)
    console.print(table)


@cron_app.command("run")
def cron_run(
    job_id: str = typer.Argument(..., help="Job ID to run"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Run a cron job once, now."""
    from opencode_claw.cron.scheduler import CronScheduler
    from opencode_claw.outbox.writer import OutboxWriter
    from opencode_claw.runtime.opencode import OpencodeClient

    config, _ = _load(config_file)
    configure_logging(config.log)
    job = next((j for j in config.cron.jobs if j.id == job_id), None)
    if job is None:
        console.print(f"[red]Unknown job: {job_id}[/red]")
        raise typer.Exit(1)

    async def run():
        runtime = OpencodeClient(
            config.opencode.base_url,
            directory=config.opencode.directory,
            timeout_s=config.opencode.request_timeout_s,
        )
        try:
            scheduler = CronScheduler(runtime, OutboxWriter(config.outbox.directory), config.cron)
            return await scheduler.run_job(job)
        finally:
            await runtime.close()

    if asyncio.run(run()) is not None:
        console.print("[green]✓[/green] Job executed")
    else:
        console.print(f"[red]Failed to run job {job_id}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status(
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show opencode-claw status."""
    from opencode_claw.outbox.writer import count_entries

    config, config_path = _load(config_file)

    console.print(f"{__logo__} opencode-claw Status\n")
    if config_path:
        console.print(f"Config: {config_path} [green]✓[/green]")
    else:
        console.print("Config: [dim]none found, using defaults[/dim]")

    spawn = " (spawned)" if config.opencode.spawn else ""
    console.print(f"OpenCode: {config.opencode.base_url}{spawn}")

    for name in ("telegram", "whatsapp"):
        channel_config = config.channel_config(name)
        enabled = "[green]enabled[/green]" if channel_config.enabled else "[dim]disabled[/dim]"
        allow = "everyone" if channel_config.allow_from is None else f"{len(channel_config.allow_from)} allowed"
        console.print(f"{name.title()}: {enabled} ({allow})")

    progress = config.router.progress
    console.print(
        f"Router: timeout {config.router.timeout_ms}ms, progress "
        f"{'on' if progress.enabled else 'off'}"
    )
    enabled_jobs = sum(1 for job in config.cron.jobs if job.enabled)
    cron_state = "[green]enabled[/green]" if config.cron.enabled else "[dim]disabled[/dim]"
    console.print(f"Cron: {cron_state} ({enabled_jobs}/{len(config.cron.jobs)} jobs)")
    counts = count_entries(config.outbox.directory)
    console.print(f"Outbox: {counts['pending']} pending, {counts['dead']} dead ({config.outbox.directory})")
    if config.health.enabled:
        console.print(f"Health: http://{config.health.host}:{config.health.port}/health")
    else:
        console.print("Health: [dim]disabled[/dim]")


if __name__ == "__main__":
    app()
