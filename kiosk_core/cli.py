"""CLI for the kiosk core.

Provides commands to inspect state, log in and out, and maintain the
idempotency ledger from a terminal.
"""

import asyncio
import webbrowser
from typing import Any, Awaitable, Callable, Dict

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kiosk_core import __version__
from kiosk_core.config import Settings, get_settings
from kiosk_core.core.errors import KioskError
from kiosk_core.monitoring.logging import redact, setup_logging
from kiosk_core.runtime import KioskRuntime

app = typer.Typer(
    name="kiosk-core",
    help="Kiosk core - device authorization and payment maintenance",
    add_completion=False,
)

console = Console()

SECRET_FIELDS = ("database_url",)


def load_settings(verbose: bool) -> Settings:
    """Load settings and configure logging, exiting on invalid configuration."""
    try:
        settings = get_settings()
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{e}")
        raise typer.Exit(1)

    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG", "log_json": False})
    setup_logging(settings)
    return settings


def run_with_runtime(
    settings: Settings,
    action: Callable[[KioskRuntime], Awaitable[Any]],
) -> Any:
    """Start a runtime (without background jobs), run ``action``, stop it."""

    async def runner() -> Any:
        runtime = KioskRuntime(settings)
        try:
            await runtime.start(run_worker=False)
            return await action(runtime)
        finally:
            await runtime.stop()

    try:
        return asyncio.run(runner())
    except KioskError as e:
        console.print(f"[red]Error:[/red] {e.user_message}")
        raise typer.Exit(1)


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Show session state and dependency health."""
    settings = load_settings(verbose)

    async def collect(runtime: KioskRuntime) -> Dict[str, Any]:
        session = runtime.session
        expires_at = session.credential.expires_at
        return {
            "liveness": await runtime.health.liveness(),
            "health": await runtime.health.check_all(),
            "session": {
                "State": session.state.value,
                "Token status": session.token_status.value,
                "Organization": session.organization_id,
                "Device": session.device_id,
                "Merchant": session.credential.merchant_id or "-",
                "Location": session.credential.location_id or "-",
                "Expires": expires_at.isoformat() if expires_at else "-",
                "Backend": runtime.backend.base_url,
                "Idempotency keys": str(await runtime.ledger.count()),
            },
        }

    result = run_with_runtime(settings, collect)

    console.print(f"[bold]{result['liveness']['message']}[/bold]")
    for name, check in result["health"]["checks"].items():
        if check["status"] == "healthy":
            console.print(f"[green]✓[/green] {name}: {check['message']}")
        else:
            console.print(f"[red]✗[/red] {name}: {check['error']}")

    table = Table(title="Session")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for name, value in result["session"].items():
        table.add_row(name, value)
    console.print(table)


@app.command()
def login(
    open_browser: bool = typer.Option(
        True, "--open/--no-open", help="Open the authorization URL in a browser"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Start device authorization and wait until it completes."""
    settings = load_settings(verbose)

    async def authorize(runtime: KioskRuntime) -> bool:
        if runtime.session.is_authenticated:
            console.print("[green]Already connected.[/green]")
            return True

        url = await runtime.session.initiate_authorization()
        if url is None:
            console.print("[yellow]An authorization is already pending; waiting for it.[/yellow]")
        else:
            console.print(Panel(url, title="Open this URL to connect", expand=False))
            if open_browser:
                webbrowser.open(url)

        with console.status("Waiting for authorization..."):
            authenticated = await runtime.wait_for_authorization()

        if not authenticated and runtime.session.last_error is not None:
            console.print(f"[red]Authorization failed:[/red] {runtime.session.last_error.user_message}")
        return authenticated

    if not run_with_runtime(settings, authorize):
        raise typer.Exit(1)
    console.print("[green]Connected.[/green]")


@app.command()
def logout(
    disconnect: bool = typer.Option(
        True, "--disconnect/--local-only", help="Also revoke tokens on the backend"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Clear stored credentials."""
    settings = load_settings(verbose)

    async def do_logout(runtime: KioskRuntime) -> None:
        await runtime.session.logout(disconnect=disconnect)

    run_with_runtime(settings, do_logout)
    console.print("[green]Logged out.[/green]")


@app.command("prune-ledger")
def prune_ledger(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Remove expired idempotency keys."""
    settings = load_settings(verbose)

    async def prune(runtime: KioskRuntime) -> int:
        return await runtime.ledger.prune()

    removed = run_with_runtime(settings, prune)
    console.print(f"[green]Removed {removed} expired idempotency key(s).[/green]")


@app.command()
def config(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Show effective configuration."""
    settings = load_settings(verbose)

    table = Table(title="Kiosk Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for name, value in settings.model_dump().items():
        shown = redact(str(value), keep=12) if name in SECRET_FIELDS else str(value)
        table.add_row(name, shown or "")

    console.print(table)


def _show_version(value: bool) -> None:
    if value:
        console.print(f"kiosk-core v{__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_show_version,
        is_eager=True,
    ),
) -> None:
    """Kiosk core - device authorization and payment maintenance."""


def main() -> None:
    app()


if __name__ == "__main__":
    main()
