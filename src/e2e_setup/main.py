"""CLI main entry point."""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys

import click
from rich.console import Console
from rich.table import Table

from .config import EnvironmentSpec, load_config
from .environment import EnvironmentDriver, EnvironmentSession
from .errors import SetupError
from .shared.logging import configure_logging, get_logger

console = Console(stderr=True)
log = get_logger(__name__)


def print_error(error: SetupError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")


def print_env(env: dict[str, str]) -> None:
    """Show exported variables as a table."""
    if not env:
        console.print("[dim]No environment variables exported.[/dim]")
        return
    table = Table(title="Exported environment")
    table.add_column("Variable", style="cyan")
    table.add_column("Value")
    for key, value in env.items():
        table.add_row(key, value)
    console.print(table)


async def wait_for_signal() -> None:
    """Block until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
    log.info("signal_received")


def _load(config_path: str) -> EnvironmentSpec:
    try:
        return load_config(config_path)
    except SetupError as e:
        print_error(e)
        sys.exit(1)


async def _teardown(driver: EnvironmentDriver, session: EnvironmentSession | None) -> bool:
    try:
        await driver.teardown(session)
    except SetupError as e:
        log.error("teardown_failed", error=e.message, **e.data)
        print_error(e)
        return False
    return True


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity")
@click.option("--json-logs", is_flag=True, help="Log as JSON lines")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write logs to a file instead of stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: int, json_logs: bool, log_file: str | None) -> None:
    """Disposable test environments for end-to-end suites."""
    ctx.ensure_object(dict)
    configure_logging(
        level="debug" if verbose else "info", log_file=log_file, json_output=json_logs
    )


@cli.command(context_settings={"ignore_unknown_options": True})
@click.option("-c", "--config", "config_path", default="e2e.yaml", type=click.Path(), help="e2e config file")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def run(config_path: str, command: tuple[str, ...]) -> None:
    """Set up the environment, run COMMAND in it, tear it down.

    Examples:

        e2e-setup run -c e2e.yaml -- pytest tests/e2e
    """
    spec = _load(config_path)
    driver = EnvironmentDriver(spec)

    async def _run() -> int:
        session = None
        try:
            session = await driver.setup()
            print_env(session.env)
            if not command:
                return 0
            log.info("command_started", command=" ".join(command))
            result = await asyncio.to_thread(subprocess.run, list(command), env=dict(os.environ))
            return result.returncode
        except SetupError as e:
            log.error("setup_failed", error=e.message, **e.data)
            print_error(e)
            return 1
        finally:
            if not await _teardown(driver, session):
                console.print("[yellow]Warning:[/yellow] environment may not be fully removed")

    sys.exit(asyncio.run(_run()))


@cli.command()
@click.option("-c", "--config", "config_path", default="e2e.yaml", type=click.Path(), help="e2e config file")
def setup(config_path: str) -> None:
    """Set up the environment and leave it running.

    If ports are forwarded from the cluster, stays in the foreground until
    interrupted, then stops the tunnels.
    """
    spec = _load(config_path)
    driver = EnvironmentDriver(spec)

    async def _setup() -> int:
        try:
            session = await driver.setup()
        except SetupError as e:
            log.error("setup_failed", error=e.message, **e.data)
            print_error(e)
            return 1
        print_env(session.env)
        if session.should_wait_signal:
            console.print("[green]Port forwards active.[/green] Press Ctrl+C to stop.")
            try:
                await wait_for_signal()
            finally:
                await session.forward.stop()
        return 0

    sys.exit(asyncio.run(_setup()))


@cli.command()
@click.option("-c", "--config", "config_path", default="e2e.yaml", type=click.Path(), help="e2e config file")
def cleanup(config_path: str) -> None:
    """Tear down the environment described by the config."""
    spec = _load(config_path)
    driver = EnvironmentDriver(spec)
    if not asyncio.run(_teardown(driver, None)):
        sys.exit(1)
    console.print("[green]Environment removed.[/green]")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
