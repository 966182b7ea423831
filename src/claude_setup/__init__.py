#!/usr/bin/env python3
"""
claude-setup - finish configuring Claude Code inside a dev container.

Registers the plugin marketplace, installs plugins, adds MCP servers and
installs skill/agent templates. Plugin steps wait until you have logged
in; everything else runs straight away. Safe to run any number of times.

Usage:
    claude-setup                 # configure (plugins only if logged in)
    claude-setup --force         # try plugin steps even without credentials
    claude-setup status
    claude-auth-watcher          # wait for login, then configure once
"""

import os
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import DEFAULT_POLL_INTERVAL, Settings
from .configurator import Configurator, Report, Status
from .credentials import CredentialProbe, CredentialState
from .prompt_hook import prompt_check
from .registry import RegistryClient, RegistryError

__version__ = "0.1.0"


console = Console()
app = typer.Typer(
    name="claude-setup",
    help="Configure Claude Code plugins, MCP servers and templates",
    add_completion=False,
)

watcher_app = typer.Typer(
    name="claude-auth-watcher",
    help="Wait for Claude authentication, then run claude-setup once",
    add_completion=False,
)


# =============================================================================
# Output
# =============================================================================

STATUS_MARKS = {
    Status.OK: "[green]✓[/green]",
    Status.SKIPPED: "[dim]-[/dim]",
    Status.FAILED: "[red]✗[/red]",
}


def show_login_instructions():
    console.print(Panel(
        "Run [cyan]claude[/cyan] and complete the login to enable plugins.\n"
        "Setup finishes automatically once you are logged in, or run "
        "[cyan]claude-setup[/cyan] again.\n"
        "To use a token instead, set [cyan]ANTHROPIC_AUTH_TOKEN[/cyan].",
        title="Not authenticated",
        border_style="yellow",
    ))


def print_report(report: Report):
    """Summary table of a configure run."""
    table = Table(title="claude-setup")
    table.add_column("Step", style="cyan")
    table.add_column("Item")
    table.add_column("Result")
    table.add_column("Detail", style="dim")

    for item in report.items:
        if item.category == "template" and item.status is Status.SKIPPED:
            continue
        table.add_row(item.category, item.name, f"{STATUS_MARKS[item.status]} {item.status.value}", item.detail)

    console.print()
    console.print(table)

    counts = report.counts()
    console.print(
        f"[green]{counts['ok']} ok[/green], {counts['skipped']} skipped, "
        f"[red]{counts['failed']} failed[/red]"
    )
    if report.marker_written:
        console.print("[green]✓[/green] Setup complete")
    elif report.failed():
        console.print("[yellow]⚠[/yellow] Some steps failed; run [cyan]claude-setup[/cyan] again to retry")


# =============================================================================
# claude-setup
# =============================================================================

@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    force: bool = typer.Option(
        False, "--force", "-f",
        help="Attempt marketplace and plugin setup even if no credentials are found",
    ),
):
    """
    Configure Claude Code plugins, MCP servers and templates.
    """
    if ctx.invoked_subcommand is not None:
        return

    settings = Settings.from_env()
    configurator = Configurator(settings, console=console)
    report = configurator.configure(force=force)

    if not report.state.authenticated and not force:
        console.print()
        show_login_instructions()

    print_report(report)


@app.command()
def status():
    """Show authentication, plugin and MCP server status."""
    settings = Settings.from_env()
    probe = CredentialProbe(settings)
    registry = RegistryClient(settings.claude_bin)

    state = probe.probe()
    state_label = {
        CredentialState.UNAUTHENTICATED: "[yellow]not authenticated[/yellow]",
        CredentialState.TOKEN_AUTH: "[green]token[/green]",
        CredentialState.OAUTH_AUTH: "[green]OAuth[/green]",
    }[state]

    table = Table(title="Claude Code Status")
    table.add_column("Item", style="cyan")
    table.add_column("Value")

    table.add_row("Authentication", state_label)
    table.add_row("Setup complete", "✓" if settings.marker_file.exists() else "✗")
    table.add_row("Marketplace", settings.marketplace)

    for label, query in [
        ("Marketplaces", registry.list_marketplaces),
        ("Plugins", registry.list_plugins),
        ("MCP servers", registry.list_endpoints),
    ]:
        try:
            values = sorted(query())
            table.add_row(label, ", ".join(values) if values else "[dim]none[/dim]")
        except RegistryError as e:
            table.add_row(label, f"[red]unavailable[/red] [dim]({e})[/dim]")

    toolchains = settings.enabled_toolchains()
    table.add_row("Toolchains", ", ".join(toolchains) if toolchains else "[dim]none[/dim]")
    console.print(table)


@app.command()
def reset():
    """Remove the completion marker so the watcher and prompt hook run again."""
    settings = Settings.from_env()
    marker = settings.marker_file
    if not marker.exists():
        console.print("[dim]No completion marker to remove[/dim]")
        return
    marker.unlink()
    console.print(f"[green]✓[/green] Removed {marker}")


@app.command("prompt-check")
def prompt_check_cmd():
    """Sampled check run from PROMPT_COMMAND (every 5th prompt)."""
    settings = Settings.from_env()
    prompt_check(settings, console=Console(stderr=True))


@app.command("spawn-watcher")
def spawn_watcher_cmd():
    """Start claude-auth-watcher in the background if setup is pending."""
    from .watcher import spawn_watcher

    settings = Settings.from_env()
    spawn_watcher(settings, console=console)


@app.command()
def version():
    """Show claude-setup version."""
    console.print(f"claude-setup {__version__}")


# =============================================================================
# claude-auth-watcher
# =============================================================================

@watcher_app.command()
def watch_cmd(
    timeout: Optional[float] = typer.Option(
        None, "--timeout",
        help="Give up after this many seconds (default: CLAUDE_AUTH_WATCHER_TIMEOUT or 4 hours)",
    ),
    poll_interval: float = typer.Option(
        DEFAULT_POLL_INTERVAL, "--poll-interval",
        help="Seconds between checks when file notifications are unavailable",
    ),
    polling: bool = typer.Option(
        False, "--polling",
        help="Always poll instead of using file notifications",
    ),
):
    """Wait for Claude authentication, then run claude-setup once."""
    # Kept off the import path of prompt-check
    from .watcher import AuthWatcher, PollingWaiter, WatcherState, clear_pid_file

    settings = Settings.from_env()
    watch_console = Console(log_path=False)

    waiter = PollingWaiter(poll_interval) if polling else None
    watcher = AuthWatcher(
        settings,
        console=watch_console,
        timeout=timeout,
        poll_interval=poll_interval,
        waiter=waiter,
    )
    watch_console.log(f"claude-auth-watcher started (PID: {os.getpid()})")
    try:
        state = watcher.run()
    finally:
        clear_pid_file()

    if state is WatcherState.FAILED:
        watch_console.log("Watcher finished without completing setup")


def main():
    """Entry point for claude-setup."""
    app()


def watcher_main():
    """Entry point for claude-auth-watcher."""
    watcher_app()


if __name__ == "__main__":
    main()
