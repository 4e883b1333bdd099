"""Worker Commands - Trigger worker runs"""

import typer
from rich.console import Console

from ..client.endpoints import OpsQueueClient, OpsQueueClientError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_worker_summary_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="worker", help="Worker trigger commands")


@app.command("run")
def run_worker(
    timeout: float | None = typer.Option(
        None, "--timeout", help="HTTP timeout in seconds for the run"
    ),
):
    """⚙️ Trigger one time-boxed worker run"""
    base_url = config.get("api.base_url")
    timeout = timeout or float(config.get("worker.timeout", 300))

    try:
        with OpsQueueClient(base_url) as client:
            print_info(f"Triggering worker at {base_url}")
            summary = client.run_worker(timeout=timeout)

            if summary.get("results"):
                console.print(create_worker_summary_table(summary))

            if summary.get("success"):
                print_success(
                    f"Processed {summary.get('processed', 0)} jobs, "
                    f"cleaned {summary.get('cleaned', 0)} stuck jobs"
                )
                return

            if summary.get("aborted"):
                print_warning("Worker run was aborted by the trigger timeout")
            print_error(f"Worker run finished with errors: {summary.get('error')}")
            raise typer.Exit(1)

    except OpsQueueClientError as e:
        print_error(f"Failed to run worker: {e}")
        raise typer.Exit(1) from None
