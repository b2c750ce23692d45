"""syncctl - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import SyncJobsClient, SyncJobsError
from .commands import config, errors, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="syncctl",
    help="⚙️ SyncJobs - background job and error recovery CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(errors.app, name="errors")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API health and queue depth"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with SyncJobsClient(base_url) as client:
            health = client.health_check()
    except SyncJobsError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the SyncJobs API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]syncctl config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    queue = health.get("queue") or {}
    database = health.get("database") or {}
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {'[green]up[/green]' if database.get('connected') else '[red]down[/red]'}\n"
            f"• Queue depth: [cyan]{queue.get('queue_depth', 0)}[/cyan]\n"
            f"• Stuck jobs: [yellow]{queue.get('stuck_jobs_count', 0)}[/yellow]\n"
            f"• Unresolved errors: [red]{queue.get('unresolved_errors', 0)}[/red]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]syncctl[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Type: [yellow]Command Line Interface[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def quickstart():
    """🚀 Quick start guide"""
    console.print(
        Panel(
            "⚙️ [bold cyan]SyncJobs Quick Start[/bold cyan]\n\n"
            "[bold]1. Check Status[/bold]\n"
            "   [dim]syncctl status[/dim]\n\n"
            "[bold]2. Enqueue a Sync[/bold]\n"
            "   [dim]syncctl jobs enqueue sync_provider_a --batch-id 2024-06-01[/dim]\n\n"
            "[bold]3. Run the Queue[/bold]\n"
            "   [dim]syncctl jobs run --max-jobs 10[/dim]\n\n"
            "[bold]4. Inspect Errors[/bold]\n"
            "   [dim]syncctl errors summary --hours 24[/dim]\n\n"
            "[bold]5. Retry Failures[/bold]\n"
            "   [dim]syncctl errors retry --all --strategy smart[/dim]\n\n"
            "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
            title="Quick Start Guide",
            border_style="green",
        )
    )


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    ⚙️ syncctl - operate the SyncJobs background job system

    Enqueue and run jobs, inspect error health and retry failures.
    """
    if version:
        from . import __version__

        console.print(f"syncctl v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
