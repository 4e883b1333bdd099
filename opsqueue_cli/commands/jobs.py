"""Jobs Commands - Queue inspection and management"""

import json

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import OpsQueueClient, OpsQueueClientError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_pipeline_logs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job queue commands")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs, newest first"""
    base_url = config.get("api.base_url")
    limit = limit or int(config.get("display.jobs_per_page", 20))

    try:
        with OpsQueueClient(base_url) as client:
            data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)

            jobs = data.get("jobs", [])
            total = data.get("total", len(jobs))

            if not jobs:
                console.print(
                    Panel(
                        "📭 [yellow]No jobs found![/yellow]\n\n"
                        f"• Status: {', '.join(status) if status else 'any'}\n"
                        f"• Type: {type or 'any'}",
                        title="Empty Results",
                        border_style="yellow",
                    )
                )
                return

            console.print(create_jobs_table(jobs))
            console.print(
                f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs"
            )

            if offset + limit < total:
                console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except OpsQueueClientError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID to show"),
):
    """🔍 Show one job in detail"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            job = client.get_job(job_id)
            console.print(create_job_panel(job))

            if job.get("payload") and config.get("display.show_payloads", False):
                console.print("\n[bold blue]Payload:[/bold blue]")
                console.print_json(json.dumps(job["payload"]))

            if job.get("result"):
                console.print("\n[bold blue]Result:[/bold blue]")
                console.print_json(json.dumps(job["result"]))

    except OpsQueueClientError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("logs")
def job_logs(
    job_id: str = typer.Argument(..., help="Job ID to show the pipeline log for"),
    limit: int = typer.Option(200, "--limit", "-l", help="Number of entries to show"),
):
    """📜 Show the persisted pipeline log of one job"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            data = client.get_job_logs(job_id, limit)
            logs = data.get("logs", [])

            if not logs:
                print_info("No pipeline log entries for this job")
                return

            console.print(create_pipeline_logs_table(logs, job_id))

    except OpsQueueClientError as e:
        print_error(f"Failed to get job logs: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def job_stats(
    window_hours: int | None = typer.Option(
        None, "--window", "-w", help="Window in hours (server default if omitted)"
    ),
):
    """📊 Show queue statistics"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            stats = client.get_stats(window_hours)
            console.print(create_stats_panel(stats))

    except OpsQueueClientError as e:
        print_error(f"Failed to get stats: {e}")
        raise typer.Exit(1) from None


@app.command("failed")
def failed_jobs(
    limit: int = typer.Option(10, "--limit", "-l", help="Number of jobs to show"),
):
    """❌ Show the most recent permanently failed jobs"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            jobs = client.get_failed_jobs(limit)

            if not jobs:
                print_success("No failed jobs")
                return

            console.print(create_jobs_table(jobs, title="Failed Jobs"))
            console.print(
                "💡 Retry one with [cyan]opsqueue jobs retry <job-id>[/cyan]"
            )

    except OpsQueueClientError as e:
        print_error(f"Failed to list failed jobs: {e}")
        raise typer.Exit(1) from None


@app.command("enqueue")
def enqueue_job(
    type: str = typer.Argument(..., help="Job type (e.g. news_scan)"),
    payload: str | None = typer.Option(
        None, "--payload", "-p", help="JSON object payload"
    ),
    priority: int | None = typer.Option(None, "--priority", help="Higher runs first"),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", help="Attempt budget before permanent failure"
    ),
    delay: float = typer.Option(0, "--delay", "-d", help="Delay in seconds"),
):
    """➕ Enqueue a single job"""
    base_url = config.get("api.base_url")

    parsed_payload = {}
    if payload:
        try:
            parsed_payload = json.loads(payload)
        except json.JSONDecodeError as e:
            print_error(f"Payload is not valid JSON: {e}")
            raise typer.Exit(1) from None
        if not isinstance(parsed_payload, dict):
            print_error("Payload must be a JSON object")
            raise typer.Exit(1)

    try:
        with OpsQueueClient(base_url) as client:
            data = client.enqueue_job(
                type=type,
                payload=parsed_payload,
                priority=priority,
                max_attempts=max_attempts,
                delay_seconds=delay,
            )
            print_success(f"Enqueued {type} job: {data.get('job_id')}")

    except OpsQueueClientError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None


@app.command("preset")
def enqueue_preset(
    name: str = typer.Argument(..., help="Preset name (morning, evening)"),
):
    """🗓️ Enqueue a named batch of jobs"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            data = client.enqueue_preset(name)
            job_ids = data.get("job_ids", [])
            print_success(f"Preset '{name}' enqueued {len(job_ids)} jobs")
            print_info(f"Correlation ID: {data.get('correlation_id')}")

    except OpsQueueClientError as e:
        print_error(f"Failed to enqueue preset: {e}")
        raise typer.Exit(1) from None


@app.command("retry")
def retry_job(
    job_id: str = typer.Argument(..., help="Failed job ID"),
):
    """🔁 Retry a failed job"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            client.retry_job(job_id)
            print_success(f"Job {job_id} queued for retry")

    except OpsQueueClientError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None


@app.command("cancel")
def cancel_job(
    job_id: str = typer.Argument(..., help="Pending job ID"),
):
    """🛑 Cancel a pending job"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            client.cancel_job(job_id)
            print_success(f"Job {job_id} cancelled")

    except OpsQueueClientError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None


@app.command("cleanup")
def cleanup_jobs(
    threshold: int | None = typer.Option(
        None, "--threshold", help="Minutes in processing before a job counts as stuck"
    ),
):
    """🧹 Fail jobs stuck in processing"""
    base_url = config.get("api.base_url")

    try:
        with OpsQueueClient(base_url) as client:
            data = client.cleanup_stuck_jobs(threshold)
            cleaned = data.get("cleaned", 0)

            if cleaned:
                print_warning(
                    f"Cleaned {cleaned} stuck jobs "
                    f"(threshold {data.get('threshold_minutes')} minutes)"
                )
            else:
                print_success("No stuck jobs found")

    except OpsQueueClientError as e:
        print_error(f"Failed to clean up jobs: {e}")
        raise typer.Exit(1) from None
