"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "queued": "blue",
    "processing": "yellow",
    "done": "green",
    "error": "red",
    "retrying": "magenta",
}

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
    "unknown": "dim",
}

URGENCY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _short(value: Any, length: int = 8) -> str:
    return str(value or "")[:length] or "—"


def _truncate(text: str | None, length: int = 60) -> str:
    if not text:
        return "—"
    return text if len(text) <= length else text[: length - 3] + "..."


def create_jobs_table(jobs: list[dict[str, Any]], title: str = "Jobs") -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Kind", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Batch", justify="left", style="dim")
    table.add_column("Updated", justify="left", style="blue")
    table.add_column("Last Error", justify="left")

    for job in jobs:
        status = job.get("status", "")
        if job.get("is_stuck"):
            status_cell = "[bold yellow]stuck[/bold yellow]"
        else:
            status_cell = _styled(status, STATUS_STYLES)
        table.add_row(
            _short(job.get("id")),
            job.get("kind", ""),
            status_cell,
            str(job.get("attempts", 0)),
            _truncate(job.get("batch_id"), 16),
            str(job.get("updated_at", ""))[:19],
            _truncate(job.get("last_error"), 40),
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Detailed view of one job"""
    content = (
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id', 'unknown')}[/cyan]\n"
        f"📦 [bold]Kind:[/bold] [magenta]{job.get('kind', 'unknown')}[/magenta]\n"
        f"📊 [bold]Status:[/bold] {_styled(job.get('status', 'unknown'), STATUS_STYLES)}"
        f"{' [bold yellow](stuck)[/bold yellow]' if job.get('is_stuck') else ''}\n"
        f"🔁 [bold]Attempts:[/bold] {job.get('attempts', 0)}\n"
        f"🏷️ [bold]Batch:[/bold] {job.get('batch_id') or '—'}\n"
        f"⏰ [bold]Run after:[/bold] {job.get('run_after') or '—'}\n"
        f"📅 [bold]Created:[/bold] [blue]{job.get('created_at', '')}[/blue]\n"
        f"🕒 [bold]Updated:[/bold] [blue]{job.get('updated_at', '')}[/blue]"
    )
    if job.get("last_error"):
        content += f"\n\n[bold red]Last error:[/bold red] {job['last_error']}"
    return Panel(content, title="Job Details", border_style="blue")


def create_run_result_panel(result: dict[str, Any]) -> Panel:
    """Summary of one runner invocation"""
    stats = result.get("stats") or {}
    content = (
        f"⚙️ Processed: [cyan]{result.get('processed', 0)}[/cyan]\n"
        f"✅ Succeeded: [green]{result.get('succeeded', 0)}[/green]\n"
        f"❌ Failed: [red]{result.get('failed', 0)}[/red]\n"
        f"⏭️ Skipped: [yellow]{result.get('skipped', 0)}[/yellow]\n"
        f"⏱️ Duration: {stats.get('duration_ms', 0)}ms"
    )
    if stats.get("remaining_eligible"):
        content += f"\n📥 Still waiting: [blue]{stats['remaining_eligible']}[/blue]"

    border = "red" if result.get("failed") else "green"
    return Panel(content, title="Run Result", border_style=border)


def create_run_errors_table(errors: list[dict[str, Any]]) -> Table:
    """Per-job failures captured during a run"""
    table = Table(title="Failures", box=box.ROUNDED)

    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Retryable", justify="center")
    table.add_column("Message")

    for error in errors:
        table.add_row(
            _short(error.get("job_id")),
            error.get("kind", ""),
            error.get("category", ""),
            _styled(error.get("severity", "unknown"), SEVERITY_STYLES),
            "✓" if error.get("retryable") else "✗",
            _truncate(error.get("user_message") or error.get("message"), 50),
        )

    return table


def create_errors_table(errors: list[dict[str, Any]], title: str = "Errors") -> Table:
    """Create a formatted table for error records"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("When", style="blue")
    table.add_column("Provider", style="magenta")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Retries", justify="right")
    table.add_column("Message")

    for error in errors:
        table.add_row(
            _short(error.get("id")),
            str(error.get("occurred_at", ""))[:19],
            error.get("provider") or "—",
            error.get("category", "unknown"),
            _styled(error.get("severity", "unknown"), SEVERITY_STYLES),
            str(error.get("retry_count", 0)),
            _truncate(error.get("user_message") or error.get("raw_message"), 50),
        )

    return table


def create_urgency_panel(summary_result: dict[str, Any]) -> Panel:
    """Headline numbers and urgency of an error summary"""
    summary = summary_result.get("summary", {})
    urgency = summary_result.get("urgency", {})
    level = urgency.get("level", "low")

    content = (
        f"🚨 [bold]Urgency:[/bold] {_styled(level, URGENCY_STYLES)} "
        f"({urgency.get('score', 0)}/100)\n"
        f"📊 Total errors: [cyan]{summary.get('total_errors', 0)}[/cyan] "
        f"in the last {summary.get('time_range_hours', 24)}h\n"
        f"🔥 Critical: [red]{summary.get('critical_count', 0)}[/red]\n"
        f"🔁 Retryable: [yellow]{summary.get('retryable_count', 0)}[/yellow]\n"
        f"✅ Resolved: [green]{summary.get('resolved_count', 0)}[/green]"
    )
    factors = urgency.get("factors") or []
    if factors:
        content += "\n\n[bold]Factors:[/bold]\n" + "\n".join(f"• {f}" for f in factors)

    border = "red" if urgency.get("requires_immediate_action") else "blue"
    return Panel(content, title="Error Summary", border_style=border)


def create_retry_table(results: list[dict[str, Any]]) -> Table:
    """Outcome of each retried error"""
    table = Table(title="Retry Results", box=box.ROUNDED)

    table.add_column("Error", style="cyan", no_wrap=True)
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Outcome", justify="center")
    table.add_column("Method", style="magenta")
    table.add_column("Message")

    outcome_styles = {"succeeded": "green", "failed": "red", "skipped": "yellow"}
    for item in results:
        table.add_row(
            _short(item.get("error_id")),
            _short(item.get("job_id")),
            item.get("category", ""),
            _styled(item.get("outcome", ""), outcome_styles),
            item.get("method", ""),
            _truncate(item.get("message"), 50),
        )

    return table


def print_recommendations(recommendations: list[str], title: str = "Recommendations"):
    if not recommendations:
        return
    console.print(f"\n[bold blue]{title}:[/bold blue]")
    for recommendation in recommendations:
        console.print(f"  💡 {recommendation}")
