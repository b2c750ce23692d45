"""Errors Commands - Error health, retry and triage"""

import typer
from rich.console import Console
from rich.table import Table

from ..client.endpoints import SyncJobsClient, SyncJobsError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_errors_table,
    create_retry_table,
    create_urgency_panel,
    print_error,
    print_info,
    print_recommendations,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="errors", help="Error summary and recovery commands")

STRATEGIES = ("immediate", "delayed", "smart")


@app.command("summary")
def error_summary(
    hours: int = typer.Option(24, "--hours", "-h", help="Time window (1-168)"),
    include_resolved: bool = typer.Option(
        False, "--include-resolved", help="Count resolved errors too"
    ),
    provider: str | None = typer.Option(None, "--provider", "-p"),
    stage: str | None = typer.Option(None, "--stage", help="ingestion|normalization|processing"),
    severity: str | None = typer.Option(
        None, "--severity", "-s", help="critical|high|medium|low"
    ),
    details: bool = typer.Option(True, "--details/--no-details", help="List records"),
):
    """🩺 Error health report"""
    if not 1 <= hours <= 168:
        print_error("Hours must be between 1 and 168")
        raise typer.Exit(1)

    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            result = client.get_error_summary(
                time_range_hours=hours,
                include_resolved=include_resolved,
                provider=provider,
                stage=stage,
                severity_filter=severity,
                include_details=details,
            )
    except SyncJobsError as e:
        print_error(f"Failed to get error summary: {e}")
        raise typer.Exit(1) from None

    console.print(create_urgency_panel(result))

    recent = result.get("recent_errors", [])
    if recent:
        console.print(create_errors_table(recent, title="Recent Errors"))

    patterns = result.get("error_patterns", [])
    if patterns:
        table = Table(title="Patterns")
        table.add_column("Category")
        table.add_column("Severity")
        table.add_column("Count", justify="right")
        table.add_column("Providers")
        for pattern in patterns:
            table.add_row(
                pattern.get("category", ""),
                pattern.get("severity", ""),
                str(pattern.get("count", 0)),
                ", ".join(pattern.get("providers", [])) or "—",
            )
        console.print(table)

    print_recommendations(result.get("recommendations", []))
    print_recommendations(result.get("next_steps", []), title="Next steps")


@app.command("retry")
def retry_errors(
    error_id: list[str] | None = typer.Option(None, "--error-id", "-e", help="Error ID (repeatable)"),
    job_id: list[str] | None = typer.Option(None, "--job-id", "-j", help="Job ID (repeatable)"),
    retry_all: bool = typer.Option(False, "--all", help="Retry every eligible error"),
    provider: str | None = typer.Option(None, "--provider", "-p"),
    category: str | None = typer.Option(None, "--category", "-c"),
    strategy: str | None = typer.Option(None, "--strategy", help="immediate|delayed|smart"),
    delay: int | None = typer.Option(None, "--delay", "-d", help="Delay in minutes"),
    max_retries: int | None = typer.Option(None, "--max-retries", help="1-10"),
    auth_refresh: bool = typer.Option(
        True, "--auth-refresh/--no-auth-refresh", help="Refresh credentials first"
    ),
):
    """🔁 Retry failed jobs"""
    if not (error_id or job_id or retry_all):
        print_error("Give --error-id, --job-id or --all")
        raise typer.Exit(1)

    strategy = strategy or config.get("retry.default_strategy", "smart")
    if strategy not in STRATEGIES:
        print_error(f"Strategy must be one of: {', '.join(STRATEGIES)}")
        raise typer.Exit(1)

    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            print_info(f"Retrying with the {strategy} strategy...")
            result = client.retry_errors(
                error_ids=error_id,
                job_ids=job_id,
                retry_all=retry_all,
                provider=provider,
                category=category,
                max_retries=max_retries,
                retry_strategy=strategy,
                delay_minutes=delay,
                include_auth_refresh=auth_refresh,
            )
    except SyncJobsError as e:
        print_error(f"Failed to retry errors: {e}")
        raise typer.Exit(1) from None

    results = result.get("results", [])
    if results:
        console.print(create_retry_table(results))
    console.print(
        f"\n🔁 Attempted: [cyan]{result.get('attempted', 0)}[/cyan]  "
        f"✅ Succeeded: [green]{result.get('succeeded', 0)}[/green]  "
        f"❌ Failed: [red]{result.get('failed', 0)}[/red]  "
        f"⏭️ Skipped: [yellow]{result.get('skipped', 0)}[/yellow]"
    )
    print_recommendations(result.get("recommendations", []))


@app.command("ack")
def acknowledge_error(error_id: str = typer.Argument(..., help="Error ID")):
    """👀 Acknowledge an error"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            result = client.acknowledge_error(error_id)
    except SyncJobsError as e:
        print_error(f"Failed to acknowledge error: {e}")
        raise typer.Exit(1) from None

    if result.get("changed"):
        print_success(f"Error {error_id} acknowledged")
    else:
        print_warning(f"Error {error_id} was already acknowledged")


@app.command("resolve")
def resolve_error(
    error_id: str = typer.Argument(..., help="Error ID"),
    method: str = typer.Option("manual", "--method", "-m", help="How it was resolved"),
):
    """✅ Mark an error resolved"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            result = client.resolve_error(error_id, method=method)
    except SyncJobsError as e:
        print_error(f"Failed to resolve error: {e}")
        raise typer.Exit(1) from None

    if result.get("changed"):
        print_success(f"Error {error_id} resolved")
    else:
        print_warning(f"Error {error_id} was already resolved")


@app.command("eligibility")
def retry_eligibility(
    error_id: list[str] | None = typer.Option(None, "--error-id", "-e", help="Error ID (repeatable)"),
):
    """🧮 Which errors automatic retry would pick up"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            data = client.get_retry_eligibility(error_ids=error_id)
    except SyncJobsError as e:
        print_error(f"Failed to check eligibility: {e}")
        raise typer.Exit(1) from None

    errors = data.get("errors", [])
    if not errors:
        print_success("No open errors")
        return

    table = Table(title="Retry Eligibility")
    table.add_column("Error", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Retries", justify="right")
    table.add_column("Job status")
    table.add_column("Eligible", justify="center")
    table.add_column("Reason")
    for item in errors:
        table.add_row(
            str(item.get("error_id", ""))[:8],
            item.get("category", ""),
            str(item.get("retry_count", 0)),
            item.get("job_status") or "—",
            "[green]✓[/green]" if item.get("eligible") else "[red]✗[/red]",
            item.get("reason", ""),
        )
    console.print(table)
    console.print(f"\n✅ Eligible: [green]{data.get('eligible', 0)}[/green] of {len(errors)}")
