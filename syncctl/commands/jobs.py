"""Jobs Commands - Enqueue, run and operate background jobs"""

import json

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..client.endpoints import SyncJobsClient, SyncJobsError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_run_errors_table,
    create_run_result_panel,
    print_error,
    print_info,
    print_recommendations,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job commands")


@app.command("enqueue")
def enqueue_job(
    kind: str = typer.Argument(..., help="Job kind (e.g. sync_provider_a, normalize)"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    batch_id: str | None = typer.Option(None, "--batch-id", "-b", help="Batch key"),
    dedupe_key: str | None = typer.Option(None, "--dedupe-key", help="Explicit dedupe key"),
):
    """📥 Enqueue a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(payload_data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            result = client.enqueue_job(
                kind, payload=payload_data, batch_id=batch_id, dedupe_key=dedupe_key
            )
    except SyncJobsError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None

    if result.get("deduplicated"):
        print_warning(
            f"Existing job returned: {result.get('job_id')} ({result.get('status')})"
        )
    else:
        print_success(f"Job enqueued: {result.get('job_id')}")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    kind: str | None = typer.Option(None, "--kind", "-k", help="Filter by kind"),
    batch_id: str | None = typer.Option(None, "--batch-id", "-b", help="Filter by batch"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            data = client.list_jobs(
                status=status, kind=kind, batch_id=batch_id, limit=limit, offset=offset
            )
    except SyncJobsError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    total = data.get("total", len(jobs))
    if not jobs:
        console.print(
            Panel(
                "📭 [yellow]No jobs found![/yellow]",
                title="Empty Results",
                border_style="yellow",
            )
        )
        return

    console.print(create_jobs_table(jobs))
    console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")
    if offset + limit < total:
        console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show one job"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            job = client.get_job(job_id)
    except SyncJobsError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))
    if job.get("result"):
        console.print(f"\n📦 [bold]Result:[/bold] {json.dumps(job['result'], indent=2)}")


@app.command("run")
def run_jobs(
    max_jobs: int | None = typer.Option(None, "--max-jobs", "-n", help="Jobs to process"),
    kind: list[str] | None = typer.Option(
        None, "--kind", "-k", help="Only these kinds (repeatable)"
    ),
    batch_id: str | None = typer.Option(None, "--batch-id", "-b", help="Only this batch"),
    include_retrying: bool = typer.Option(
        True, "--retrying/--no-retrying", help="Also run jobs waiting in retrying"
    ),
    include_stuck: bool = typer.Option(
        False, "--include-stuck", help="Reclaim and reprocess stuck jobs"
    ),
):
    """⚙️ Process eligible jobs now"""
    base_url = config.get("api.base_url")
    max_jobs = max_jobs or config.get("run.default_max_jobs")
    try:
        with SyncJobsClient(base_url) as client:
            print_info("Running jobs...")
            result = client.run_jobs(
                max_jobs=max_jobs,
                kinds=kind,
                batch_id=batch_id,
                include_retrying=include_retrying,
                skip_stuck_jobs=not include_stuck,
            )
    except SyncJobsError as e:
        print_error(f"Failed to run jobs: {e}")
        raise typer.Exit(1) from None

    console.print(create_run_result_panel(result))
    if result.get("errors"):
        console.print(create_run_errors_table(result["errors"]))
    print_recommendations(result.get("recommendations", []))


@app.command("stuck")
def list_stuck(
    threshold: int | None = typer.Option(
        None, "--threshold", "-t", help="Minutes without progress"
    ),
):
    """🧊 List jobs stuck in processing"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            data = client.list_stuck_jobs(threshold_minutes=threshold)
    except SyncJobsError as e:
        print_error(f"Failed to list stuck jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    if not jobs:
        print_success("No stuck jobs")
        return

    console.print(create_jobs_table(
        [{**job, "status": "processing", "is_stuck": True} for job in jobs],
        title="Stuck Jobs",
    ))
    console.print(
        "💡 Use [cyan]syncctl jobs requeue <id>[/cyan] or "
        "[cyan]syncctl jobs terminate <id>[/cyan]"
    )


@app.command("requeue")
def requeue_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔁 Put a failed or stuck job back in the queue"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            result = client.requeue_job(job_id)
    except SyncJobsError as e:
        print_error(f"Failed to requeue job: {e}")
        raise typer.Exit(1) from None

    if result.get("changed"):
        print_success(f"Job {job_id} requeued")
    else:
        print_warning(f"Job {job_id} left unchanged (status: {result.get('status')})")


@app.command("terminate")
def terminate_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🛑 Mark a stuck job as failed"""
    if not yes and not Confirm.ask(f"Terminate job {job_id}?"):
        console.print("Termination cancelled.")
        return

    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            result = client.terminate_job(job_id)
    except SyncJobsError as e:
        print_error(f"Failed to terminate job: {e}")
        raise typer.Exit(1) from None

    if result.get("changed"):
        print_success(f"Job {job_id} terminated")
    else:
        print_warning(f"Job {job_id} is not stuck (status: {result.get('status')})")


@app.command("stats")
def job_stats():
    """📊 Queue statistics"""
    base_url = config.get("api.base_url")
    try:
        with SyncJobsClient(base_url) as client:
            stats = client.get_job_stats()
    except SyncJobsError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None

    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  • {status}: [cyan]{count}[/cyan]" for status, count in sorted(by_status.items())
    )
    console.print(
        Panel(
            f"📦 Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]\n"
            f"📥 Queue depth: [blue]{stats.get('queue_depth', 0)}[/blue]\n"
            f"❌ Failed last hour: [red]{stats.get('failed_last_hour', 0)}[/red]\n"
            f"🧊 Stuck: [yellow]{stats.get('stuck_jobs', 0)}[/yellow]\n\n"
            f"[bold]By status:[/bold]\n{status_lines or '  —'}",
            title="Job Statistics",
            border_style="blue",
        )
    )
