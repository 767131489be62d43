"""Memlink CLI with Rich output.

Provides commands for:
- Remote MCP connection status and transport health
- Calling a single MCP tool through the transport manager
- Local MCP server lifecycle

Usage:
    memlink status                       # Connect and show transport health
    memlink call search_memories -a '{"query": "x"}'
    memlink local detect                 # Find the embedded server
    memlink local configure --port 3100  # Update local server config
    memlink local start                  # Run the local server (Ctrl+C stops)
    memlink local stop                   # Stop a server started elsewhere
    memlink local status                 # Show local server status
"""

import asyncio
import json
import os
import signal
import time
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from memlink import __version__
from memlink.config import Config
from memlink.credentials import EnvCredentialStore
from memlink.errors import ConfigurationError, MemlinkError
from memlink.guidance import suggestions_for
from memlink.local import ConnectionManager
from memlink.log_config import get_logger
from memlink.mcp import TransportManager, TransportManagerSettings
from memlink.mcp.models import ConnectionHealth, ToolRequest

log = get_logger("cli")

app = typer.Typer(
    name="memlink",
    help="Memlink - resilient MCP connectivity",
    rich_markup_mode="rich",
    no_args_is_help=True,
)
local_app = typer.Typer(help="Manage the local MCP server", no_args_is_help=True)
app.add_typer(local_app, name="local")
console = Console()

LOCK_FILE_NAME = "local-server.json"

HEALTH_STYLES = {
    ConnectionHealth.HEALTHY: "green",
    ConnectionHealth.DEGRADED: "yellow",
    ConnectionHealth.DISCONNECTED: "red",
}


def print_banner():
    """Print Memlink banner."""
    banner = Text()
    banner.append("Memlink", style="bold cyan")
    banner.append(f" {__version__}", style="cyan")
    console.print(Panel(banner, border_style="cyan", box=box.ROUNDED))


def print_suggestions(suggestions: list[str]) -> None:
    if not suggestions:
        return
    console.print("\n[bold]Troubleshooting:[/bold]")
    for i, suggestion in enumerate(suggestions, 1):
        console.print(f"  {i}. {escape(suggestion)}")


def _build_manager(transport: Optional[str]) -> TransportManager:
    config = Config()
    if transport:
        config.preference = transport
    return TransportManager(TransportManagerSettings.from_config(config), credentials=EnvCredentialStore())


@app.command()
def status(
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="auto, websocket or http"),
):
    """Connect to the MCP service and show transport health."""
    print_banner()

    async def run() -> tuple[dict, Optional[Exception]]:
        manager = _build_manager(transport)
        error = None
        try:
            await manager.connect()
        except MemlinkError as e:
            error = e
        try:
            return manager.get_status().to_dict(), error
        finally:
            await manager.dispose()

    try:
        info, error = asyncio.run(run())
    except ValueError as e:
        console.print(f"[red]Invalid option:[/red] {escape(str(e))}")
        raise typer.Exit(2)

    table = Table(title="MCP Connection", box=box.ROUNDED)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    health = ConnectionHealth(info["connection_health"])
    table.add_row("Health", f"[{HEALTH_STYLES[health]}]{health.value}[/{HEALTH_STYLES[health]}]")
    table.add_row("Active transport", info["active_transport"] or "-")
    table.add_row("Available", ", ".join(info["available_transports"]) or "-")
    table.add_row("Real-time", "[green]Yes[/green]" if info["real_time_capable"] else "[dim]No[/dim]")
    table.add_row("Failures", str(info["failure_count"]))
    console.print(table)

    if error is not None:
        console.print(f"\n[red bold]✗ {escape(str(error))}[/red bold]")
        print_suggestions(suggestions_for(error))
        raise typer.Exit(1)


@app.command()
def call(
    tool: str = typer.Argument(..., help="MCP tool name, e.g. search_memories"),
    args: str = typer.Option("{}", "--args", "-a", help="Tool arguments as a JSON object"),
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="auto, websocket or http"),
):
    """Call one MCP tool and print its result as JSON."""
    try:
        arguments = json.loads(args)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --args JSON:[/red] {escape(str(e))}")
        raise typer.Exit(2)
    if not isinstance(arguments, dict):
        console.print("[red]--args must be a JSON object[/red]")
        raise typer.Exit(2)

    async def run():
        async with _build_manager(transport) as manager:
            return await manager.send(ToolRequest(name=tool, arguments=arguments))

    try:
        response = asyncio.run(run())
    except MemlinkError as e:
        console.print(f"[red bold]✗ {escape(str(e))}[/red bold]")
        print_suggestions(suggestions_for(e))
        raise typer.Exit(1)

    if not response.ok:
        error = response.error
        console.print(f"[red bold]✗ Error {error.code}:[/red bold] {escape(error.message)}")
        print_suggestions(suggestions_for(error.message))
        raise typer.Exit(1)

    console.print_json(json.dumps(response.result, default=str))


@app.command()
def version():
    """Show Memlink version."""
    console.print(f"Memlink [cyan]{__version__}[/cyan]")


# ----------------------------------------------------------------------
# Local server
# ----------------------------------------------------------------------


def _lock_path(manager: ConnectionManager) -> Path:
    return manager.config_path.parent / LOCK_FILE_NAME


def _read_lock(manager: ConnectionManager) -> Optional[dict]:
    try:
        return json.loads(_lock_path(manager).read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return None


def _process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


@local_app.command("detect")
def local_detect():
    """Locate the embedded MCP server entry point."""
    manager = ConnectionManager()
    path = asyncio.run(manager.detect_server_path())
    if path:
        console.print(f"[green]✓[/green] Found MCP server: [cyan]{path}[/cyan]")
    else:
        console.print("[yellow]No MCP server found[/yellow]")
        print_suggestions(suggestions_for(ConfigurationError("server not found")))
        raise typer.Exit(1)


@local_app.command("configure")
def local_configure(
    path: Optional[str] = typer.Option(None, "--path", help="Server entry point"),
    port: Optional[int] = typer.Option(None, "--port", help="Server port (1000-65535)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Startup timeout in seconds"),
    retries: Optional[int] = typer.Option(None, "--retries", help="Start attempts"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="error, warn, info or debug"),
    auto_start: Optional[bool] = typer.Option(None, "--auto-start/--no-auto-start"),
):
    """Auto-detect the server, or update individual config fields."""
    manager = ConnectionManager()
    updates = {
        key: value
        for key, value in {
            "local_server_path": path,
            "server_port": port,
            "connection_timeout": timeout,
            "retry_attempts": retries,
            "log_level": log_level,
            "auto_start": auto_start,
        }.items()
        if value is not None
    }

    async def run():
        await manager.init()
        if not updates:
            return await manager.auto_configure_local_server()
        return await manager.update_config(updates)

    try:
        result = asyncio.run(run())
    except MemlinkError as e:
        console.print(f"[red bold]✗ {escape(str(e))}[/red bold]")
        raise typer.Exit(1)

    if not updates:
        if not result.success:
            console.print(f"[red bold]✗ {escape(str(result.error))}[/red bold]")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Configured server [cyan]{result.server_path}[/cyan]")
        console.print(f"[dim]Config: {result.config_path}[/dim]")
        return

    table = Table(title="Local Server Config", box=box.ROUNDED)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in result.model_dump().items():
        table.add_row(key, str(value) if value != "" else "-")
    console.print(table)


@local_app.command("start")
def local_start():
    """Start the local MCP server and keep it running until interrupted."""
    manager = ConnectionManager()

    async def run() -> int:
        result = await manager.connect_local()
        if not result.success:
            console.print(f"[red bold]✗ {escape(str(result.error))}[/red bold]")
            print_suggestions(result.suggestions)
            return 1

        instance = manager.get_connection_status().server_instance
        lock = _lock_path(manager)
        lock.write_text(json.dumps(instance.to_dict()))
        console.print(
            f"[green]✓[/green] Local MCP server running "
            f"(PID [cyan]{instance.pid}[/cyan], port [cyan]{instance.port}[/cyan])"
        )
        console.print(f"[dim]Log: {instance.log_path}[/dim]")
        console.print("[dim]Press Ctrl+C to stop[/dim]")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            while not stop.is_set():
                if not await manager.verify_connection(instance.server_path):
                    console.print("[yellow]Local MCP server exited[/yellow]")
                    return 1
                try:
                    await asyncio.wait_for(stop.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
            return 0
        finally:
            await manager.stop_local_server()
            lock.unlink(missing_ok=True)
            console.print("[green]✓[/green] Local MCP server stopped")

    code = asyncio.run(run())
    if code:
        raise typer.Exit(code)


@local_app.command("stop")
def local_stop(timeout: float = typer.Option(5.0, "--timeout", help="Seconds before SIGKILL")):
    """Stop a local MCP server started by `memlink local start`."""
    manager = ConnectionManager()
    lock = _read_lock(manager)
    pid = lock.get("pid") if lock else None
    if not pid:
        console.print("[dim]No local MCP server recorded[/dim]")
        return

    if not _process_exists(pid):
        _lock_path(manager).unlink(missing_ok=True)
        console.print(f"[dim]Process {pid} already exited[/dim]")
        return

    log.debug(f"Sending SIGTERM to PID {pid}")
    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _process_exists(pid):
            break
        time.sleep(0.1)
    else:
        log.warning(f"PID {pid} didn't stop gracefully, sending SIGKILL")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    _lock_path(manager).unlink(missing_ok=True)
    console.print(f"[green]✓[/green] Stopped local MCP server (PID {pid})")


@local_app.command("status")
def local_status():
    """Show local server configuration and the recorded instance."""
    manager = ConnectionManager()
    asyncio.run(manager.init())
    config = manager.get_config()
    lock = _read_lock(manager)

    table = Table(title="Local MCP Server", box=box.ROUNDED)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Config", str(manager.config_path))
    table.add_row("Server path", config.local_server_path or "[yellow]not configured[/yellow]")
    table.add_row("Port", str(config.server_port))
    table.add_row("Auto start", "Yes" if config.auto_start else "No")

    if lock and lock.get("pid"):
        alive = _process_exists(lock["pid"])
        state = "[green]running[/green]" if alive else "[red]not running[/red]"
        table.add_row("Instance", f"PID {lock['pid']} {state}")
        table.add_row("Log", lock.get("log_path", "-"))
    else:
        table.add_row("Instance", "[dim]none[/dim]")

    console.print(table)


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
