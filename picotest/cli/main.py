"""Main CLI entry point for picotest."""

import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import BaseModel, Field, ConfigDict
from rich.console import Console
from rich.table import Table

from ..core.config import load_config
from ..core.enums import ScriptDialect
from ..core.errors import AdminError, PicotestError
from ..core.log import configure_logging, get_logger
from ..core.types import PicotestConfig
from ..topology.topology import DEFAULT_TIER, instance_layout, load_topology


class GlobalCliOptions(BaseModel):
    """Global CLI options that can be used across all commands."""

    verbose: int = Field(0, description="Increase verbosity level")
    config_file: Optional[Path] = Field(None, description="Configuration file path")
    log_level: str = Field(
        "WARNING", description="Harness logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    model_config = ConfigDict(use_enum_values=True)


app = typer.Typer(
    name="picotest",
    help="Test-cluster harness for picodata plugins",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)
console = Console()
logger = get_logger(__name__)


@dataclass
class _ConsolePorts:
    admin: int


@dataclass
class ConsoleTarget:
    """Admin console address given on the command line."""

    host: str
    ports: Any
    admin_socket: Optional[Path] = None


def parse_target(target: str) -> ConsoleTarget:
    """``HOST:PORT`` for a TCP console, anything else is a unix socket path."""
    host, sep, port = target.rpartition(":")
    if sep and host and port.isdigit():
        return ConsoleTarget(host=host, ports=_ConsolePorts(int(port)))
    path = Path(target)
    if not path.exists():
        raise typer.BadParameter(f"Not a HOST:PORT address or an existing socket: {target}")
    return ConsoleTarget(host="localhost", ports=_ConsolePorts(0), admin_socket=path)


def _config(ctx: typer.Context) -> PicotestConfig:
    options: GlobalCliOptions = ctx.obj["cli_options"]
    overrides = {"log_level": options.log_level}
    return load_config(config_file=options.config_file, **overrides)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity level"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Harness logging level (DEBUG, INFO, WARNING, ERROR) - explicit level",
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
) -> None:
    """picotest: run picodata plugin clusters for tests."""
    if verbose > 0 and log_level is not None:
        console.print("[red]Error: Cannot specify both --verbose and --log-level[/red]")
        raise typer.Exit(1)

    if log_level is None:
        resolved_log_level = (
            "DEBUG" if verbose >= 2 else "INFO" if verbose == 1 else "WARNING"
        )
    else:
        resolved_log_level = log_level

    cli_options = GlobalCliOptions(
        verbose=verbose,
        config_file=config_file,
        log_level=resolved_log_level,
    )
    ctx.ensure_object(dict)
    ctx.obj["cli_options"] = cli_options

    configure_logging(
        level=cli_options.log_level, enable_console=True, enable_json=False
    )


@app.command()
def version() -> None:
    """Show version information."""
    from .. import __version__

    table = Table(title="picotest Version Information")
    table.add_column("Component", style="cyan")
    table.add_column("Version", style="green")
    table.add_row("picotest", __version__)
    try:
        import pytest

        table.add_row("pytest", pytest.__version__)
    except ImportError:
        table.add_row("pytest", "[red]Not installed[/red]")
    try:
        import msgpack

        table.add_row("msgpack", ".".join(str(part) for part in msgpack.version))
    except ImportError:
        table.add_row("msgpack", "[red]Not installed[/red]")
    console.print(table)


@app.command()
def config(ctx: typer.Context) -> None:
    """Show current configuration."""
    try:
        current = _config(ctx)
    except PicotestError as e:
        console.print(f"[red]Error getting configuration: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="picotest Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Binary", current.tool.binary)
    table.add_row("Build Profile", current.tool.build_profile)
    table.add_row("Host", current.tool.host)
    table.add_row("Port Range", f"{current.ports.base_port}-{current.ports.max_port}")
    if current.ports.lock_dir:
        table.add_row("Port Lock Directory", str(current.ports.lock_dir))
    if current.work_dir:
        table.add_row("Work Directory", str(current.work_dir))
    table.add_row("Keep Data", str(current.keep_data))
    table.add_row("Log Level", current.log_level)
    table.add_row("Readiness Probe", current.readiness.probe.value)
    table.add_row("Readiness Timeout", f"{current.timeouts.readiness_default}s")
    table.add_row("Poll Interval", f"{current.timeouts.readiness_poll_interval}s")
    table.add_row("Graceful Stop", f"{current.timeouts.process_graceful_stop}s")
    table.add_row("Admin Request Timeout", f"{current.timeouts.admin_request}s")
    table.add_row("RPC Request Timeout", f"{current.timeouts.rpc_request}s")
    console.print(table)


@app.command()
def topology(
    path: Path = typer.Argument(..., help="Plugin directory holding topology.toml"),
    single_node: bool = typer.Option(
        False, "--single-node", help="Show the single instance layout instead"
    ),
) -> None:
    """Show the instances a topology would start."""
    try:
        parsed = load_topology(path)
    except PicotestError as e:
        console.print(f"[red]Invalid topology: {e}[/red]")
        raise typer.Exit(1)

    if single_node or parsed is None or not parsed.tiers:
        tiers = {DEFAULT_TIER: 1}
    else:
        tiers = parsed.tier_counts()

    table = Table(title=f"Topology of {path}")
    table.add_column("Index", style="cyan", justify="right")
    table.add_column("Instance", style="green")
    table.add_column("Tier", style="magenta")
    for index, (name, tier) in enumerate(instance_layout(tiers)):
        table.add_row(str(index), name, tier)
    console.print(table)

    if parsed is not None and parsed.plugins:
        plugins = Table(title="Plugins")
        plugins.add_column("Plugin", style="cyan")
        plugins.add_column("Version", style="green")
        plugins.add_column("Services")
        for name, plugin in sorted(parsed.plugins.items()):
            plugins.add_row(name, plugin.effective_version, ", ".join(sorted(plugin.services)))
        console.print(plugins)


@app.command()
def up(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Plugin directory holding topology.toml"),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Readiness timeout in seconds"
    ),
    single_node: bool = typer.Option(False, "--single-node", help="Start one instance only"),
    no_plugins: bool = typer.Option(
        False, "--no-plugins", help="Do not install the topology's plugins"
    ),
) -> None:
    """Start a cluster and keep it running until interrupted."""
    from ..core.context import ApplicationContext
    from ..instances.orchestrator import run_cluster

    try:
        context = ApplicationContext.create(_config(ctx))
        cluster = run_cluster(
            path,
            timeout=timeout,
            context=context,
            single_node=single_node,
            install_plugins=not no_plugins,
        )
    except PicotestError as e:
        console.print(f"[red]Cluster failed to start: {e}[/red]")
        raise typer.Exit(1)

    with cluster:
        table = Table(title=f"Cluster {cluster.cluster_id.short}")
        table.add_column("Instance", style="cyan")
        table.add_column("Tier", style="magenta")
        table.add_column("PID", justify="right")
        table.add_column("Binary", style="green")
        table.add_column("HTTP", style="green")
        table.add_column("PG", style="green")
        table.add_column("Admin")
        for ref in cluster.instances():
            admin = str(ref.admin_socket) if ref.admin_socket else str(ref.ports.admin)
            table.add_row(
                ref.name,
                ref.tier,
                str(ref.pid),
                str(ref.ports.binary),
                str(ref.ports.http),
                str(ref.ports.pg),
                admin,
            )
        console.print(table)
        console.print("[green]Cluster is ready.[/green] Press Ctrl-C to stop it.")
        _wait_for_interrupt()
        console.print("[yellow]Stopping cluster...[/yellow]")


def _wait_for_interrupt() -> None:
    stop = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        signal.signal(signal.SIGTERM, previous)


def _console_command(ctx: typer.Context, target: str, run: Any) -> None:
    from ..bridges.admin import AdminBridge

    bridge = AdminBridge(_config(ctx).timeouts)
    try:
        result = run(bridge, parse_target(target))
    except AdminError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if result is not None:
        console.print(result)


@app.command()
def query(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Admin console, HOST:PORT or socket path"),
    text: str = typer.Argument(..., help="SQL statement"),
) -> None:
    """Run one SQL statement through an instance's admin console."""

    def run(bridge, instance):
        rows = bridge.run_query(instance, text)
        if not rows.columns:
            return f"{rows.row_count} row(s) affected"
        table = Table()
        for column in rows.columns:
            table.add_column(str(column), style="cyan")
        for row in rows.rows:
            table.add_row(*(str(value) for value in row))
        return table

    _console_command(ctx, target, run)


@app.command()
def script(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Admin console, HOST:PORT or socket path"),
    text: str = typer.Argument(..., help="Script text"),
    sql: bool = typer.Option(False, "--sql", help="Run the script as SQL instead of Lua"),
) -> None:
    """Run a script through an instance's admin console and print its output."""
    dialect = ScriptDialect.SQL if sql else ScriptDialect.LUA
    _console_command(ctx, target, lambda bridge, instance: bridge.run_script(instance, text, dialect=dialect))


def cli_main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except (RuntimeError, OSError, ValueError, ImportError) as e:
        logger.error("Unexpected error: %s", e)
        console.print(f"[red]Unexpected error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
