"""Jobs Commands - Submit, monitor and control background jobs"""

import json
import time
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import LeagueJobsClient, LeagueJobsError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_items_table,
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
    styled_status,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job management commands")

TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


def _load_payload(payload: str | None, payload_file: Path | None) -> dict[str, Any]:
    """Payload from an inline JSON string or a JSON/YAML file"""
    if payload and payload_file:
        raise typer.BadParameter("Use either --payload or --payload-file, not both")
    if payload_file:
        text = payload_file.read_text(encoding="utf-8")
        data = (
            yaml.safe_load(text)
            if payload_file.suffix in (".yaml", ".yml")
            else json.loads(text)
        )
    elif payload:
        data = json.loads(payload)
    else:
        data = {}
    if not isinstance(data, dict):
        raise typer.BadParameter("Payload must be a JSON object")
    return data


def _print_action_result(action: str, result: dict[str, Any]):
    for job_id in result.get("success_ids", []):
        print_success(f"{action}: {job_id}")
    for job_id, message in result.get("errors", {}).items():
        print_warning(f"{job_id}: {message}")


@app.command("submit")
def submit_job(
    type: str = typer.Argument(..., help="Job type, e.g. mission_orders.bulk_pdf"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="Inline JSON payload"),
    payload_file: Path | None = typer.Option(
        None, "--payload-file", "-f", exists=True, help="JSON or YAML payload file"
    ),
    priority: int | None = typer.Option(None, "--priority", help="Higher runs first"),
    label: str | None = typer.Option(None, "--label", "-l", help="Description"),
    dedupe: bool | None = typer.Option(
        None, "--dedupe/--no-dedupe", help="Reuse an identical existing job"
    ),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait until the job finishes"),
):
    """🚀 Submit a background job"""
    base_url = config.get("api.base_url")

    try:
        data = _load_payload(payload, payload_file)
    except (ValueError, OSError, yaml.YAMLError) as e:
        print_error(f"Invalid payload: {e}")
        raise typer.Exit(1) from None

    use_dedupe = config.get("jobs.dedupe", True) if dedupe is None else dedupe

    try:
        with LeagueJobsClient(base_url) as client:
            result = client.submit_job(
                type=type,
                payload=data,
                priority=priority,
                dedupe=use_dedupe,
                label=label,
            )
            job_id = result.get("job_id")

            if result.get("reused"):
                print_warning(
                    f"Identical job already exists: {job_id} "
                    f"({result.get('status')}, {result.get('progress', 0)}%)"
                )
            else:
                print_success(f"Job submitted: {job_id}")

            if wait:
                _watch(client, job_id)

    except LeagueJobsError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs"""
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)
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
            console.print(
                f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs"
            )
            if offset + limit < total:
                console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except LeagueJobsError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID to show"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Follow until finished"),
):
    """🔍 Show a job with its progress"""
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            if watch:
                _watch(client, job_id)
            else:
                console.print(create_job_panel(client.get_job(job_id)))

    except LeagueJobsError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("items")
def show_items(
    job_id: str = typer.Argument(..., help="Job ID"),
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
):
    """📬 Show per-item progress of a bulk job"""
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            data = client.list_job_items(job_id, status=status)
            items = data.get("items", [])
            if not items:
                print_info("This job has no items")
                return

            console.print(create_job_items_table(items))
            counts = data.get("counts", {})
            summary = ", ".join(
                f"{styled_status(name)}: {count}"
                for name, count in counts.items()
                if name != "total" and count
            )
            console.print(f"\n📊 {counts.get('total', len(items))} items: {summary}")

    except LeagueJobsError as e:
        print_error(f"Failed to list items: {e}")
        raise typer.Exit(1) from None


@app.command("retry")
def retry_jobs(job_ids: list[str] = typer.Argument(..., help="Job IDs to retry")):
    """🔁 Retry failed or cancelled jobs"""
    _run_action("retry", job_ids, "Retried")


@app.command("cancel")
def cancel_jobs(job_ids: list[str] = typer.Argument(..., help="Job IDs to cancel")):
    """🛑 Cancel jobs"""
    _run_action("cancel", job_ids, "Cancelled")


@app.command("pause")
def pause_jobs(job_ids: list[str] = typer.Argument(..., help="Job IDs to pause")):
    """⏸ Pause pending jobs"""
    _run_action("pause", job_ids, "Paused")


@app.command("resume")
def resume_jobs(job_ids: list[str] = typer.Argument(..., help="Job IDs to resume")):
    """▶ Resume paused jobs"""
    _run_action("resume", job_ids, "Resumed")


def _run_action(action: str, job_ids: list[str], verb: str):
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            result = getattr(client, f"{action}_jobs")(job_ids)
            _print_action_result(verb, result)
            if result.get("failed_ids"):
                raise typer.Exit(1)

    except LeagueJobsError as e:
        print_error(f"Failed to {action} jobs: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def show_stats():
    """📊 Show queue statistics"""
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            console.print(create_stats_panel(client.job_stats()))

    except LeagueJobsError as e:
        print_error(f"Failed to get stats: {e}")
        raise typer.Exit(1) from None


@app.command("artifact")
def show_artifact(job_id: str = typer.Argument(..., help="Completed job ID")):
    """📎 Get a download link for a job's artifact"""
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            link = client.artifact_link(job_id)
            console.print(
                Panel(
                    f"• Path: [green]{link.get('artifact_path')}[/green]\n"
                    f"• Type: {link.get('artifact_type')}\n"
                    f"• Expires in: [yellow]{link.get('expires_in_s')}s[/yellow]\n\n"
                    f"[blue]{link.get('url')}[/blue]",
                    title="Artifact",
                    border_style="green",
                )
            )

    except LeagueJobsError as e:
        print_error(f"Failed to get artifact: {e}")
        raise typer.Exit(1) from None


@app.command("run")
def run_jobs():
    """⚙️ Trigger one runner invocation on the server"""
    base_url = config.get("api.base_url")

    try:
        with LeagueJobsClient(base_url) as client:
            report = client.run_jobs()
            claimed = report.get("claimed", 0)
            if not claimed:
                print_info("No jobs were ready to run")
                return

            print_success(f"Processed {claimed} job(s) in {report.get('duration_ms')}ms")
            for outcome in report.get("outcomes", []):
                error = f" ({outcome['error_code']})" if outcome.get("error_code") else ""
                console.print(
                    f"  {str(outcome.get('job_id'))[:8]} {outcome.get('type')}: "
                    f"{styled_status(outcome.get('status', ''))}{error}"
                )

    except LeagueJobsError as e:
        print_error(f"Failed to run jobs: {e}")
        raise typer.Exit(1) from None


def _watch(client: LeagueJobsClient, job_id: str):
    """Poll a job until it reaches a terminal status"""
    interval = float(config.get("jobs.watch_interval_s", 2))
    last_line = None

    while True:
        job = client.get_job(job_id)
        line = (
            f"{styled_status(job.get('status', ''))} "
            f"{job.get('progress', 0)}% {job.get('phase') or ''}"
        )
        if line != last_line:
            console.print(line)
            last_line = line
        if job.get("status") in TERMINAL_STATUSES:
            console.print(create_job_panel(job))
            return
        time.sleep(interval)
