"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "blue",
    "running": "cyan",
    "retrying": "yellow",
    "paused": "magenta",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "skipped": "yellow",
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


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def progress_bar(percent: int, width: int = 20) -> str:
    """Text progress bar, e.g. ``█████░░░░░ 50%``"""
    percent = max(0, min(100, int(percent or 0)))
    filled = round(width * percent / 100)
    return f"{'█' * filled}{'░' * (width - filled)} {percent}%"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for jobs list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Label", justify="left", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Progress", justify="left")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            job.get("type", ""),
            job.get("label") or "—",
            styled_status(job.get("status", "")),
            progress_bar(job.get("progress", 0), width=10),
            str(job.get("attempts", 0)),
            str(job.get("created_at", ""))[:19],
        )

    return table


def create_job_items_table(items: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job's items"""
    table = Table(title="Job Items", box=box.ROUNDED)

    table.add_column("#", justify="right", style="cyan")
    table.add_column("Target", justify="left", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Error", justify="left", style="red")
    table.add_column("Duration", justify="right", style="yellow")

    for item in items:
        duration = item.get("duration_ms")
        table.add_row(
            str(item.get("seq", "")),
            item.get("target_label", ""),
            styled_status(item.get("status", "")),
            item.get("error_code") or "—",
            f"{duration}ms" if duration is not None else "—",
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create formatted panel for a single job"""
    lines = [
        f"• Type: [magenta]{job.get('type')}[/magenta]",
        f"• Label: {job.get('label') or '—'}",
        f"• Status: {styled_status(job.get('status', ''))}",
        f"• Progress: {progress_bar(job.get('progress', 0))}",
        f"• Phase: [cyan]{job.get('phase') or '—'}[/cyan] "
        f"({job.get('phase_progress', 0)}%)",
        f"• Attempts: [yellow]{job.get('attempts', 0)}[/yellow]",
        f"• Priority: {job.get('priority')}",
    ]
    if job.get("total") is not None:
        lines.append(f"• Units: {job['total']}")
    if job.get("next_retry_at"):
        lines.append(f"• Next retry: [yellow]{job['next_retry_at']}[/yellow]")
    if job.get("artifact_path"):
        lines.append(
            f"• Artifact: [green]{job['artifact_path']}[/green] "
            f"({job.get('artifact_type')})"
        )
    if job.get("error_code"):
        lines.append(
            f"• Error: [red]{job['error_code']}[/red] {job.get('error_message') or ''}"
        )
    if job.get("duration_ms") is not None:
        lines.append(f"• Duration: {job['duration_ms']}ms")

    return Panel(
        "\n".join(lines),
        title=f"Job {job.get('id')}",
        border_style=STATUS_STYLES.get(job.get("status", ""), "blue"),
    )


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  {styled_status(status)}: {count}" for status, count in sorted(by_status.items())
    )
    avg_runtime = stats.get("avg_runtime_seconds")
    content = f"""
📊 [bold blue]Job Queue[/bold blue]

• Total jobs: [blue]{stats.get("total_jobs", 0)}[/blue]
• Queue depth: [cyan]{stats.get("queue_depth", 0)}[/cyan]
• Stale running: [yellow]{stats.get("stale_running", 0)}[/yellow]
• Failed (last hour): [red]{stats.get("failed_last_hour", 0)}[/red]
• Avg runtime: {f"{avg_runtime:.1f}s" if avg_runtime is not None else "—"}

[bold]By status[/bold]
{status_lines or "  —"}
"""

    return Panel(content, title="Job Statistics", border_style="green")
