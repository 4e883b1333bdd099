"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "retrying": "yellow",
    "stale": "magenta",
    "aborted": "red",
}

LEVEL_STYLES = {
    "info": "blue",
    "warn": "yellow",
    "error": "red",
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


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _short(value: str | None, length: int = 8) -> str:
    return (value or "")[:length]


def _truncate(value: str | None, length: int = 40) -> str:
    if not value:
        return "—"
    return value if len(value) <= length else value[: length - 1] + "…"


def create_jobs_table(jobs: list[dict[str, Any]], title: str = "Jobs") -> Table:
    """Create a formatted table for a jobs list"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="right", style="yellow")
    table.add_column("Attempts", justify="center")
    table.add_column("Next Run", justify="left", style="blue")
    table.add_column("Last Error", justify="left", style="red")

    for job in jobs:
        table.add_row(
            _short(job.get("id")),
            job.get("type", ""),
            format_status(job.get("status", "")),
            str(job.get("priority", 0)),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            (job.get("next_run_at") or "—")[:19],
            _truncate(job.get("last_error")),
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create formatted panel with job details"""
    content = f"""
🆔 [bold]ID:[/bold] [cyan]{job.get("id", "unknown")}[/cyan]
📝 [bold]Type:[/bold] [magenta]{job.get("type", "unknown")}[/magenta]
✅ [bold]Status:[/bold] {format_status(job.get("status", "unknown"))}
⚡ [bold]Priority:[/bold] [yellow]{job.get("priority", 0)}[/yellow]
🔁 [bold]Attempts:[/bold] {job.get("attempts", 0)}/{job.get("max_attempts", 0)}
⏰ [bold]Next Run:[/bold] [blue]{job.get("next_run_at") or "—"}[/blue]
📅 [bold]Created:[/bold] [blue]{job.get("created_at") or "—"}[/blue]
▶️ [bold]Started:[/bold] [blue]{job.get("started_at") or "—"}[/blue]
🏁 [bold]Completed:[/bold] [blue]{job.get("completed_at") or "—"}[/blue]
👷 [bold]Claimed By:[/bold] {job.get("claimed_by") or "—"}
🔗 [bold]Correlation:[/bold] {job.get("correlation_id") or "—"}
👪 [bold]Parent:[/bold] {job.get("parent_job_id") or "—"}
"""
    if job.get("last_error"):
        content += f"\n❌ [bold]Last Error:[/bold] [red]{job['last_error']}[/red]\n"

    return Panel(content.strip(), title="Job Details", border_style="blue")


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    content = f"""
📊 [bold blue]Jobs created in the last {stats.get("window_hours", 24)}h[/bold blue]

• Pending: [yellow]{stats.get("pending", 0)}[/yellow]
• Processing: [blue]{stats.get("processing", 0)}[/blue]
• Completed: [green]{stats.get("completed", 0)}[/green]
• Failed: [red]{stats.get("failed", 0)}[/red]
• Cancelled: [dim]{stats.get("cancelled", 0)}[/dim]
"""

    by_type = stats.get("by_type", {})
    if by_type:
        content += "\n[bold]By type:[/bold]\n"
        for job_type, count in sorted(by_type.items()):
            content += f"• {job_type}: [cyan]{count}[/cyan]\n"

    return Panel(content.strip(), title="Queue Statistics", border_style="green")


def create_worker_summary_table(summary: dict[str, Any]) -> Table:
    """Create formatted table for a worker run summary"""
    table = Table(
        title=(
            f"Worker {summary.get('worker_id', '')}: "
            f"{summary.get('processed', 0)} processed, "
            f"{summary.get('cleaned', 0)} cleaned in {summary.get('duration_ms', 0)}ms"
        ),
        box=box.ROUNDED,
    )

    table.add_column("Job", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Result", justify="center")
    table.add_column("Attempt", justify="center")
    table.add_column("Duration", justify="right", style="yellow")
    table.add_column("Error", justify="left", style="red")

    for result in summary.get("results", []):
        table.add_row(
            _short(result.get("job_id")),
            result.get("job_type", ""),
            format_status(result.get("status", "")),
            str(result.get("attempt", 0)),
            f"{result.get('duration_ms', 0)}ms",
            _truncate(result.get("error")),
        )

    return table


def create_pipeline_logs_table(logs: list[dict[str, Any]], job_id: str) -> Table:
    """Create formatted table for the pipeline log of one job"""
    table = Table(title=f"Pipeline log {_short(job_id)}", box=box.ROUNDED)

    table.add_column("Time", justify="left", style="blue", no_wrap=True)
    table.add_column("Level", justify="center")
    table.add_column("Step", justify="left", style="magenta")
    table.add_column("Message", justify="left")
    table.add_column("Duration", justify="right", style="yellow")

    for entry in logs:
        level = entry.get("level", "info")
        style = LEVEL_STYLES.get(level, "white")
        duration = entry.get("duration_ms")
        table.add_row(
            (entry.get("created_at") or "—")[:19],
            f"[{style}]{level}[/{style}]",
            entry.get("step") or "—",
            _truncate(entry.get("message"), 60),
            f"{duration}ms" if duration is not None else "—",
        )

    return table
