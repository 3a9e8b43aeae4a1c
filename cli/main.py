"""League Jobs CLI - Main Entry Point"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

# Import command modules
from .commands import config, jobs
from .utils.formatting import print_error, print_info, print_success, styled_status
from .utils.config_manager import config as config_manager
from .client.endpoints import LeagueJobsClient, LeagueJobsError

console = Console()

# Create main Typer app
app = typer.Typer(
    name="league-jobs",
    help="⚙️ League Jobs - background job engine CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check system status and connectivity"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with LeagueJobsClient(base_url) as client:
            health = client.health_check()
    except LeagueJobsError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the League Jobs API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]league-jobs config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    queue = health.get("queue") or {}
    database_ok = bool((health.get("database") or {}).get("connected"))
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {'[green]ok[/green]' if database_ok else '[red]unavailable[/red]'}\n"
            f"• Queue depth: [cyan]{queue.get('queue_depth', 0)}[/cyan] "
            f"({styled_status('running')}: {queue.get('running', 0)}, "
            f"{styled_status('retrying')}: {queue.get('retrying', 0)})\n"
            f"• Stale jobs: [yellow]{queue.get('stale_jobs_count', 0)}[/yellow]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if health.get("ok") else "yellow",
        )
    )


@app.command()
def worker(
    once: bool = typer.Option(
        False, "--once", help="Run a single invocation and exit"
    ),
):
    """🛠 Run a job worker against the configured database"""
    from api.config.logging import setup_logging
    from api.config.settings import get_settings
    from api.infra.database import Database
    from api.v1.core.registries import JobRegistry
    from api.v1.infra.jobs.registry_init import register_job_handlers
    from api.v1.infra.jobs.worker import JobRunner

    settings = get_settings()
    setup_logging(settings)

    database = Database(settings)
    registry = register_job_handlers(JobRegistry(), settings)
    runner = JobRunner(settings, database.SessionLocal, registry)

    async def _run():
        try:
            if once:
                return await runner.run_once()
            await runner.start()
        finally:
            await database.close()

    try:
        report = asyncio.run(_run())
    except KeyboardInterrupt:
        runner.stop()
        print_info("Worker stopped")
        return

    if once:
        print_success(
            f"Processed {report.claimed} job(s) in {report.duration_ms}ms"
        )
        for outcome in report.outcomes:
            error = f" ({outcome.error_code})" if outcome.error_code else ""
            console.print(
                f"  {str(outcome.job_id)[:8]} {outcome.type}: "
                f"{styled_status(outcome.status)}{error}"
            )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]League Jobs CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Type: [yellow]Command Line Interface[/yellow]\n"
            f"• Repository: [blue]League Ops Jobs[/blue]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def quickstart():
    """🚀 Quick start guide and setup"""
    console.print(
        Panel(
            "⚙️ [bold cyan]League Jobs Quick Start[/bold cyan]\n\n"
            "[bold]1. Check Status[/bold]\n"
            "   [dim]league-jobs status[/dim]\n\n"
            "[bold]2. Submit a Job[/bold]\n"
            "   [dim]league-jobs jobs submit mission_orders.bulk_pdf -f orders.yaml[/dim]\n\n"
            "[bold]3. Run the Worker[/bold]\n"
            "   [dim]league-jobs worker[/dim]\n\n"
            "[bold]4. Follow Progress[/bold]\n"
            "   [dim]league-jobs jobs show <job-id> --watch[/dim]\n\n"
            "[bold]5. Download the Result[/bold]\n"
            "   [dim]league-jobs jobs artifact <job-id>[/dim]\n\n"
            "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
            title="Quick Start Guide",
            border_style="green",
        )
    )


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    ⚙️ League Jobs CLI - Background job engine for league operations

    Submit bulk mission-order PDFs, email campaigns and table exports,
    follow their progress and control retries from the command line.
    """
    if version:
        from . import __version__

        console.print(f"League Jobs CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
