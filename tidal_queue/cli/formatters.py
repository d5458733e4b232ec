"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tidal_queue.models.config import QueueConfig, get_quality_info
from tidal_queue.models.job import Job, JobStatus, TrackStatus
from tidal_queue.models.stats import QueueMetrics, QueueSnapshot, QueueStats
from tidal_queue.transport.uploader import UploadResult
from tidal_queue.utils.formatting import (
    format_age,
    format_duration,
    format_size,
    format_timestamp,
)

STATUS_STYLES = {
    JobStatus.QUEUED: "cyan",
    JobStatus.PROCESSING: "bold blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "yellow",
}

TRACK_STATUS_ICONS = {
    TrackStatus.PENDING: "[dim]○[/dim]",
    TrackStatus.DOWNLOADING: "[blue]↓[/blue]",
    TrackStatus.COMPLETED: "[green]✓[/green]",
    TrackStatus.FAILED: "[red]✗[/red]",
}


def format_error_with_suggestions(
    error: Exception, context: Optional[dict] = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `tidal-queue init --force` to write a fresh configuration.",
            "• Environment variables such as REDIS_URL override the file.",
        ],
        "StoreUnavailableError": [
            "• Make sure the Redis server is running and reachable.",
            "• Set REDIS_DISABLED=true to run from process memory instead.",
        ],
        "JobRecordError": [
            "• Check the track or album id and the quality code.",
            "• Valid qualities are LOW, HIGH, LOSSLESS and HI_RES_LOSSLESS.",
        ],
        "InvalidTransitionError": [
            "• Only failed or cancelled jobs can be retried.",
            "• Run `tidal-queue show <JOB_ID>` to see the job's current state.",
        ],
        "CircuitBreakerError": [
            "• The upload server failed repeatedly and requests are paused.",
            "• Check that the server is up, then try again in a minute.",
        ],
        "TransportError": [
            "• The upload server could not be reached.",
            "• Check `server_url` in your configuration.",
        ],
        "ChunkUploadError": [
            "• The server rejected part of the upload.",
            "• Try again, or upload without chunks using `--no-chunks`.",
        ],
        "UploadIncompleteError": [
            "• The server did not confirm the upload.",
            "• Check the server logs for the upload id.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def _status(status: JobStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _describe(job: Job) -> str:
    payload = job.payload
    if payload.type == "track":
        title = payload.track_title or f"Track {payload.track_id}"
    else:
        title = payload.album_title or f"Album {payload.album_id}"
    if payload.artist_name:
        return f"{payload.artist_name} - {title}"
    return title


def _quality(quality: str) -> str:
    info = get_quality_info(quality)
    return f"[{info['color']}]{info['short']}[/{info['color']}]"


def print_config(config_path: Path, config: QueueConfig):
    """Displays the effective configuration."""
    console = Console()
    content = "\n".join(
        f"{key} = {value}" for key, value in sorted(config.model_dump().items())
    )
    console.print(
        Panel(
            content,
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_snapshot_warning(snapshot: QueueSnapshot):
    if snapshot.warning:
        Console().print(f"[yellow]⚠ {snapshot.warning}[/yellow]")


def print_jobs_table(jobs: list[Job], now_ms: int, title: str = "Download Queue"):
    """Displays one row per job."""
    console = Console()
    if not jobs:
        console.print("[dim]The queue is empty.[/dim]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Job ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Item")
    table.add_column("Quality")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created", justify="right", style="dim")

    for job in jobs:
        progress = f"{job.progress * 100:.0f}%"
        if job.track_count:
            progress += f" ({job.completed_tracks or 0}/{job.track_count})"
        table.add_row(
            job.id,
            job.payload.type,
            _describe(job),
            _quality(job.payload.quality),
            job.priority.value,
            _status(job.status),
            progress,
            format_age(job.created_at, now_ms),
        )
    console.print(table)


def print_job_details(job: Job):
    """Displays everything recorded about one job."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Type:", job.payload.type)
    table.add_row("Item:", _describe(job))
    table.add_row("Target ID:", str(job.payload.target_id))
    table.add_row("Quality:", get_quality_info(job.payload.quality)["name"])
    table.add_row("Status:", _status(job.status))
    table.add_row("Priority:", job.priority.value)
    table.add_row("Progress:", f"{job.progress * 100:.1f}%")
    table.add_row("Retries:", f"{job.retry_count}/{job.max_retries}")
    if job.next_retry_at:
        table.add_row("Next Retry:", format_timestamp(job.next_retry_at))
    if job.cancellation_requested:
        table.add_row("Cancellation:", "[yellow]requested[/yellow]")
    table.add_row("Created:", format_timestamp(job.created_at))
    table.add_row("Started:", format_timestamp(job.started_at))
    table.add_row("Finished:", format_timestamp(job.completed_at))
    if job.download_time_ms is not None:
        table.add_row("Duration:", format_duration(job.download_time_ms / 1000))
    if job.file_size:
        table.add_row("Size:", format_size(job.file_size))
    if job.error:
        category = f" ({job.error_category.value})" if job.error_category else ""
        table.add_row("Error:", f"[red]{job.error}[/red]{category}")
    if job.last_error and job.last_error != job.error:
        table.add_row("Last Error:", f"[dim]{job.last_error}[/dim]")

    console.print(
        Panel(
            table,
            title=f"[bold]{job.id}[/bold]",
            border_style=STATUS_STYLES.get(job.status, "white").split()[-1],
            expand=False,
        )
    )

    if job.track_progress:
        tracks = Table(box=box.SIMPLE)
        tracks.add_column("", width=2)
        tracks.add_column("Track")
        tracks.add_column("Error", style="red")
        for entry in job.track_progress:
            tracks.add_row(
                TRACK_STATUS_ICONS.get(entry.status, "?"),
                entry.track_title or str(entry.track_id),
                entry.error or "",
            )
        console.print(tracks)


def print_stats_table(stats: QueueStats, metrics: QueueMetrics):
    """Displays job counts and aggregate metrics."""
    console = Console()

    counts = Table(title="Jobs by Status", box=box.ROUNDED)
    counts.add_column("Status")
    counts.add_column("Jobs", justify="right")
    for status in JobStatus:
        counts.add_row(_status(status), str(getattr(stats, status.value)))
    counts.add_section()
    counts.add_row("[bold]total[/bold]", f"[bold]{stats.total}[/bold]")
    console.print(counts)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()
    table.add_row("Success Rate:", f"[green]{metrics.avg_success_rate:.1f}%[/green]")
    table.add_row("Avg. Retries:", f"{metrics.avg_retry_count:.2f}")
    table.add_row(
        "Total Download Time:",
        f"[blue]{format_duration(metrics.total_download_time_ms / 1000)}[/blue]",
    )
    table.add_row(
        "Avg. Job Duration:",
        f"[blue]{format_duration(metrics.avg_job_duration_ms / 1000)}[/blue]",
    )
    console.print(Panel(table, title="[bold]Metrics[/bold]", expand=False))


def print_upload_result(result: UploadResult, size_bytes: int, duration_s: float):
    console = Console()
    if not result.success:
        console.print(f"[red]✗ Upload failed: {result.error}[/red]")
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()
    table.add_row("Action:", result.action or "-")
    table.add_row("File:", f"[dim]{result.filepath or '-'}[/dim]")
    table.add_row("Size:", format_size(size_bytes))
    table.add_row("Time Elapsed:", format_duration(duration_s))
    if result.message:
        table.add_row("Server:", result.message)

    console.print(
        Panel(
            table,
            title="[bold green]✓ Upload Complete[/bold green]",
            border_style="green",
            expand=False,
        )
    )


def describe_status(data: dict[str, Any]) -> str:
    """One-line summary of the worker status dict."""
    state = "[green]running[/green]" if data.get("running") else "[dim]stopped[/dim]"
    return (
        f"Worker {state}: {data.get('active_downloads', 0)}/"
        f"{data.get('max_concurrent', 0)} active"
    )
