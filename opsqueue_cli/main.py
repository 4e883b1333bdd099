"""Ops Queue CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import OpsQueueClient, OpsQueueClientError
from .commands import config, jobs, worker
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="opsqueue",
    help="⚙️ Ops Queue - background job queue and content pipeline CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(worker.app, name="worker")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API health, store connectivity and queue depth"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with OpsQueueClient(base_url) as client:
            health = client.health_check()
    except OpsQueueClientError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the Ops Queue API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]opsqueue config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    store = health.get("store") or {}
    queue = health.get("queue") or {}
    connected = store.get("connected", False)
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Store: [{'green' if connected else 'red'}]"
            f"{'connected' if connected else 'disconnected'}[/]\n"
            f"• Pending: [yellow]{queue.get('pending', 0)}[/yellow]  "
            f"Processing: [blue]{queue.get('processing', 0)}[/blue]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if connected else "yellow",
        )
    )

    if not connected:
        raise typer.Exit(1)


def _version_callback(value: bool):
    if value:
        from . import __version__

        console.print(f"Ops Queue CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """
    ⚙️ Ops Queue CLI

    Enqueue and inspect background jobs, trigger worker runs and manage
    the CLI configuration.
    """


if __name__ == "__main__":
    app()
